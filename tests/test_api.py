"""
Tests for the JSON endpoints over the tiered cache.
"""
import pytest
from fastapi.testclient import TestClient

from config.settings import Settings
from pipeline_dashboard.gitlab_client import GitLabError
from pipeline_dashboard.main import create_app
from pipeline_dashboard.orchestrator import FetchOrchestrator

from conftest import InlineExecutor


@pytest.fixture
def orchestrator(cache, server, fake_gitlab):
    return FetchOrchestrator(
        cache,
        [server],
        client_factory=lambda _server: fake_gitlab,
        executor=InlineExecutor(),
    )


@pytest.fixture
def client(tmp_path, orchestrator):
    app = create_app(settings=Settings(cache_directory=tmp_path), orchestrator=orchestrator)
    return TestClient(app)


def test_list_servers(client):
    assert client.get("/api/servers").json() == {"servers": ["main"]}


def test_projects_miss_then_hit(client, fake_gitlab):
    first = client.get("/api/servers/main/projects").json()
    second = client.get("/api/servers/main/projects").json()

    assert first["source"] == "upstream"
    assert second["source"] == "fresh"
    assert second["isStale"] is False
    assert [p["path"] for p in second["data"]] == ["group/app", "group/lib"]
    assert fake_gitlab.calls["get_group_projects"] == 1


def test_stale_branches_are_served_and_refreshed(client, cache, clock, fake_gitlab):
    cache.set_branches("group/app", [{"name": "old"}])
    clock.advance(301)

    data = client.get("/api/servers/main/branches", params={"project": "group/app"}).json()

    assert data["data"] == [{"name": "old"}]
    assert data["isStale"] is True
    assert data["isRefreshing"] is True
    assert [b["name"] for b in cache.get_branches("group/app").data] == ["main", "feature/x"]


def test_pipeline_include_jobs_flag(client):
    plain = client.get("/api/servers/main/pipeline", params={"project": "group/app", "branch": "main"}).json()
    with_jobs = client.get(
        "/api/servers/main/pipeline",
        params={"project": "group/app", "branch": "main", "includeJobs": "true"},
    ).json()

    assert "jobs" not in plain["data"]
    assert with_jobs["data"]["jobs"][0]["name"] == "build"
    assert plain["durationText"] == "2m"


def test_pipeline_duration_text_uses_cached_estimate(client, cache, fake_gitlab):
    fake_gitlab.pipeline_status = "running"
    cache.set_statistics(42, "main", {"estimatedDuration": 450})

    data = client.get("/api/servers/main/pipeline", params={"project": "group/app", "branch": "main"}).json()

    assert data["durationText"] == "? / ~7m 30s"


def test_statistics_endpoint(client, fake_gitlab):
    fake_gitlab.recent_pipelines = [{"status": "success", "duration": d} for d in (10, 20)]

    data = client.get("/api/servers/main/statistics", params={"projectId": 42, "branch": "main"}).json()

    assert data["data"]["estimatedDuration"] == 15
    assert data["data"]["sampleSize"] == 2
    assert data["estimatedDurationText"] == "15s"


def test_unknown_server_is_404(client):
    assert client.get("/api/servers/nowhere/projects").status_code == 404


def test_unknown_project_is_404(client):
    response = client.get("/api/servers/main/branches", params={"project": "group/missing"})
    assert response.status_code == 404


def test_upstream_failure_is_502(client, fake_gitlab):
    fake_gitlab.fail_with = GitLabError("Failed to fetch project: 500 Internal Server Error", 500)

    response = client.get("/api/servers/main/projects")

    assert response.status_code == 502
    assert "structure" in response.json()["detail"]


def test_missing_project_param_is_422(client):
    assert client.get("/api/servers/main/branches").status_code == 422


def test_cache_stats_and_clear(client, cache):
    client.get("/api/servers/main/projects")

    stats = client.get("/cache/stats").json()
    assert stats["cache"]["tiers"]["structure"]["entries"] == 1
    assert stats["orchestrator"]["upstream_fetches"] == 1

    assert client.delete("/cache").json() == {"cleared": 1}
    assert cache.get_projects("main").data is None
