"""
Tests for settings and token selection.
"""
from datetime import date

import pytest
from pydantic import ValidationError

from config.settings import GitLabServer, GitLabToken, GroupConfig, ProjectConfig, Settings


def _server(**kwargs):
    return GitLabServer(name="main", url="https://gitlab.example.com", **kwargs)


def test_legacy_single_token():
    assert _server(token="glpat-legacy").active_token() == "glpat-legacy"


def test_tokens_list_wins_over_legacy_token():
    server = _server(token="glpat-legacy", tokens=[GitLabToken(value="glpat-new")])
    assert server.active_token() == "glpat-new"


def test_first_unexpired_token_is_used():
    server = _server(tokens=[
        GitLabToken(value="old", name="Old", expires_at=date(2024, 1, 1)),
        GitLabToken(value="current", name="Current", expires_at=date(2030, 1, 1)),
    ])
    assert server.active_token(today=date(2025, 6, 1)) == "current"


def test_token_expiring_today_is_still_valid():
    server = _server(tokens=[GitLabToken(value="today", expires_at=date(2025, 6, 1))])
    assert server.active_token(today=date(2025, 6, 1)) == "today"


def test_all_expired_falls_back_to_first_token():
    """Better to let GitLab reject the call than to serve nothing at all."""
    server = _server(tokens=[
        GitLabToken(value="first", expires_at=date(2024, 1, 1)),
        GitLabToken(value="second", expires_at=date(2024, 2, 1)),
    ])
    assert server.active_token(today=date(2025, 6, 1)) == "first"


def test_no_token_configured():
    assert _server().active_token() is None


def test_group_accepts_camel_case_subgroups_flag():
    assert GroupConfig(path="group", includeSubgroups=True).include_subgroups is True
    assert GroupConfig(path="group", include_subgroups=True).include_subgroups is True


def test_project_and_group_entries_need_id_or_path():
    assert ProjectConfig(id=7).id == 7
    assert GroupConfig(path="group").path == "group"

    with pytest.raises(ValidationError):
        ProjectConfig(name="nameless")
    with pytest.raises(ValidationError):
        GroupConfig(includeSubgroups=True)


def test_server_without_project_target_is_rejected_at_load(monkeypatch):
    monkeypatch.setenv(
        "GITLAB_SERVERS",
        '[{"name": "main", "url": "https://gitlab.example.com", "projects": [{"name": "app"}]}]',
    )
    with pytest.raises(ValidationError):
        Settings()


def test_servers_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv(
        "GITLAB_SERVERS",
        '[{"name": "main", "url": "https://gitlab.example.com", "token": "t",'
        ' "groups": [{"path": "group", "includeSubgroups": true}]}]',
    )
    monkeypatch.setenv("CACHE_TTL_PIPELINES", "2")
    monkeypatch.setenv("CACHE_DIRECTORY", str(tmp_path))

    settings = Settings()

    assert settings.gitlab_servers[0].name == "main"
    assert settings.gitlab_servers[0].groups[0].include_subgroups is True
    assert settings.cache_ttl_pipelines == 2
    assert settings.cache_directory == tmp_path


def test_cache_ttl_defaults():
    settings = Settings()
    assert settings.cache_ttl_structure == 1800
    assert settings.cache_ttl_branches == 300
    assert settings.cache_ttl_statistics == 1800
