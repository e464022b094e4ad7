"""Configuration management using pydantic-settings."""
import logging
from datetime import date
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger("config.settings")


class GitLabToken(BaseModel):
    """A personal access token, optionally with its expiry date."""
    value: str
    name: str = "Primary Token"
    expires_at: Optional[date] = None


class ProjectConfig(BaseModel):
    """A project watched directly, by numeric id or full path."""
    id: Optional[int] = None
    path: Optional[str] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def _needs_id_or_path(self):
        if self.id is None and not self.path:
            raise ValueError("project entry needs an id or a path")
        return self


class GroupConfig(BaseModel):
    """A group whose projects are all watched."""
    id: Optional[int] = None
    path: Optional[str] = None
    name: Optional[str] = None
    include_subgroups: bool = Field(False, alias="includeSubgroups")

    @model_validator(mode="after")
    def _needs_id_or_path(self):
        if self.id is None and not self.path:
            raise ValueError("group entry needs an id or a path")
        return self

    class Config:
        populate_by_name = True


class GitLabServer(BaseModel):
    """One GitLab instance and what to watch on it."""
    name: str
    url: str
    token: Optional[str] = None  # Legacy single-token form
    tokens: List[GitLabToken] = []
    projects: List[ProjectConfig] = []
    groups: List[GroupConfig] = []

    def all_tokens(self) -> List[GitLabToken]:
        """Configured tokens, accepting the legacy single ``token`` field."""
        if self.tokens:
            return list(self.tokens)
        if self.token:
            return [GitLabToken(value=self.token)]
        return []

    def active_token(self, today: Optional[date] = None) -> Optional[str]:
        """
        Token to use for API calls.

        Prefers the first token that has not expired. If every token has
        expired, the first one is used anyway and GitLab gets to reject it.
        """
        tokens = self.all_tokens()
        if not tokens:
            return None

        today = today or date.today()
        for token in tokens:
            if token.expires_at is None or token.expires_at >= today:
                return token.value

        logger.warning(
            f"No unexpired token for server {self.name}, falling back to '{tokens[0].name}'"
        )
        return tokens[0].value


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # GitLab servers, as a JSON list in GITLAB_SERVERS
    gitlab_servers: List[GitLabServer] = []
    gitlab_timeout: float = 10.0

    # Projects whose name or path contains any of these (case-insensitive) are hidden
    exclude_projects: List[str] = []

    # Cache settings
    cache_directory: Path = Path("./.cache")
    cache_ttl_structure: float = 1800   # groups & projects
    cache_ttl_branches: float = 300
    cache_ttl_pipelines: float = 5
    cache_ttl_statistics: float = 1800  # median duration estimates

    # Refill behaviour
    refresh_workers: int = 4
    coalesce_timeout: float = 30.0

    # Number of recent pipelines behind a duration estimate
    statistics_sample_count: int = 10

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 8000

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
