"""
Fetch orchestration on top of the tiered cache.

- Fresh entries are served as-is
- Absent entries are fetched synchronously, written, then served
- Stale entries are served immediately while one background refill per
  (tier, key) brings the cache up to date

Upstream failures never write to the cache, so the previous entry stays
servable.
"""
import threading
import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from config.settings import GitLabServer
from pipeline_dashboard.cache.coalescer import RequestCoalescer
from pipeline_dashboard.cache.core import (
    CacheResult,
    Freshness,
    Tier,
    branches_key,
    pipeline_key,
    statistics_key,
    structure_key,
)
from pipeline_dashboard.cache.manager import TieredCacheManager
from pipeline_dashboard.cache.statistics import DEFAULT_SAMPLE_COUNT, estimate
from pipeline_dashboard.gitlab_client import GitLabClient, GitLabError, normalize_branch, normalize_project

logger = logging.getLogger("orchestrator")

ClientFactory = Callable[[GitLabServer], GitLabClient]


class ServerNotFoundError(LookupError):
    """No configured server has the requested name."""


class ProjectNotFoundError(LookupError):
    """The project path is unknown to the server."""


class UpstreamFetchError(Exception):
    """Refilling a cache entry from GitLab failed; the entry is untouched."""

    def __init__(self, tier: Tier, key: str, cause: BaseException):
        super().__init__(f"Failed to refresh {tier.value} cache for {key}: {cause}")
        self.tier = tier
        self.key = key
        self.cause = cause


@dataclass
class FetchResult:
    """What a caller gets back: the data plus how it was obtained."""
    data: Any
    is_stale: bool
    is_refreshing: bool
    age: Optional[float]
    source: str  # "fresh", "stale" or "upstream"

    @classmethod
    def from_cache(cls, cached: CacheResult, is_refreshing: bool = False) -> "FetchResult":
        return cls(
            data=cached.data,
            is_stale=cached.is_stale,
            is_refreshing=is_refreshing,
            age=cached.age,
            source=cached.freshness.value,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "data": self.data,
            "isStale": self.is_stale,
            "isRefreshing": self.is_refreshing,
            "age": round(self.age, 3) if self.age is not None else None,
            "source": self.source,
        }


def default_client_factory(timeout: float = 10.0) -> ClientFactory:
    """Build GitLab clients with each server's active token."""
    def factory(server: GitLabServer) -> GitLabClient:
        return GitLabClient(server.url, server.active_token(), timeout=timeout)
    return factory


class FetchOrchestrator:
    """
    Decides when to go upstream and writes results back into the cache.

    Usage:
        orchestrator = FetchOrchestrator(cache, settings.gitlab_servers)
        result = orchestrator.get_pipeline("gitlab.com", "group/app", "main", include_jobs=False)
        result.data, result.is_stale
    """

    def __init__(
        self,
        cache: TieredCacheManager,
        servers: Iterable[GitLabServer],
        client_factory: Optional[ClientFactory] = None,
        exclude_projects: Iterable[str] = (),
        statistics_sample_count: int = DEFAULT_SAMPLE_COUNT,
        max_refresh_workers: int = 4,
        coalesce_timeout: float = 30.0,
        executor: Optional[Executor] = None,
    ):
        """
        Args:
            cache: Tiered cache to read from and write to
            servers: Configured GitLab servers
            client_factory: Builds a GitLabClient for a server
            exclude_projects: Project paths never listed
            statistics_sample_count: Pipelines behind a duration estimate
            max_refresh_workers: Thread pool size for background refills
            coalesce_timeout: Timeout for waiting on a coalesced fetch
            executor: Runs background refills instead of an own pool
        """
        self._cache = cache
        self._servers: Dict[str, GitLabServer] = {server.name: server for server in servers}
        self._client_factory = client_factory or default_client_factory()
        self._clients: Dict[str, GitLabClient] = {}
        self._clients_lock = threading.Lock()
        self._exclude_projects = [pattern.lower() for pattern in exclude_projects if pattern]
        self._sample_count = statistics_sample_count
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout)

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_refresh_workers,
            thread_name_prefix="cache-refresh",
        )
        self._refreshing: Set[Tuple[Tier, str]] = set()
        self._refreshing_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self._stats = {
            "upstream_fetches": 0,
            "refreshes": 0,
            "refresh_failures": 0,
        }

    @property
    def cache(self) -> TieredCacheManager:
        return self._cache

    # ===== CORE REFILL CONTRACT =====

    def resolve(
        self,
        tier: Tier,
        key: str,
        fetch_fn: Callable[[], Any],
        force_refresh: bool = False,
    ) -> FetchResult:
        """
        Serve ``key`` from ``tier``, going upstream only when needed.

        Args:
            tier: Cache tier of the key
            key: Tier-specific cache key
            fetch_fn: Fetches the current value from upstream
            force_refresh: Bypass the cache and fetch synchronously

        Raises:
            UpstreamFetchError: If a synchronous fetch fails
        """
        cached = self._cache.read(tier, key)

        if not force_refresh:
            if cached.freshness is Freshness.FRESH:
                return FetchResult.from_cache(cached)

            if cached.freshness is Freshness.STALE:
                logger.info(
                    f"CACHE HIT (stale, refreshing) [{tier.value}]: {key} [age={cached.age:.1f}s]"
                )
                scheduled = self._schedule_refresh(tier, key, fetch_fn)
                return FetchResult.from_cache(cached, is_refreshing=scheduled or self.is_refreshing(tier, key))

            logger.info(f"CACHE MISS [{tier.value}]: {key}")
        else:
            logger.info(f"FORCE REFRESH [{tier.value}]: {key}")

        data = self._fetch_and_store(tier, key, fetch_fn)
        return FetchResult(data=data, is_stale=False, is_refreshing=False, age=0.0, source="upstream")

    def _fetch_and_store(self, tier: Tier, key: str, fetch_fn: Callable[[], Any]) -> Any:
        """Coalesced upstream fetch; the result is written before any waiter returns."""
        def fetch_and_write():
            started = time.monotonic()
            value = fetch_fn()
            self._cache.write(tier, key, value, duration=time.monotonic() - started)
            with self._stats_lock:
                self._stats["upstream_fetches"] += 1
            return value

        try:
            return self._coalescer.get_or_fetch(tier, key, fetch_and_write)
        except (GitLabError, TimeoutError) as e:
            raise UpstreamFetchError(tier, key, e) from e

    def _schedule_refresh(self, tier: Tier, key: str, fetch_fn: Callable[[], Any]) -> bool:
        """
        Queue a background refill unless one is already queued or running.

        Returns:
            True if a refill was queued
        """
        refresh_key = (tier, key)
        with self._refreshing_lock:
            if refresh_key in self._refreshing:
                logger.debug(f"Already refreshing [{tier.value}]: {key}")
                return False
            self._refreshing.add(refresh_key)

        def do_refresh():
            try:
                self._fetch_and_store(tier, key, fetch_fn)
                with self._stats_lock:
                    self._stats["refreshes"] += 1
                logger.debug(f"Background refresh complete [{tier.value}]: {key}")
            except Exception as e:
                with self._stats_lock:
                    self._stats["refresh_failures"] += 1
                logger.warning(f"Background refresh failed [{tier.value}]: {key} - {e}")
            finally:
                with self._refreshing_lock:
                    self._refreshing.discard(refresh_key)

        try:
            self._executor.submit(do_refresh)
        except RuntimeError as e:
            # Executor already shut down; keep serving the stale value
            with self._refreshing_lock:
                self._refreshing.discard(refresh_key)
            logger.warning(f"Cannot schedule refresh [{tier.value}]: {key} - {e}")
            return False
        return True

    def is_refreshing(self, tier: Tier, key: str) -> bool:
        with self._refreshing_lock:
            return (tier, key) in self._refreshing

    # ===== SERVERS & CLIENTS =====

    @property
    def server_names(self) -> List[str]:
        return list(self._servers.keys())

    def find_server(self, server_name: str) -> GitLabServer:
        server = self._servers.get(server_name)
        if server is None:
            raise ServerNotFoundError(f"Server not found: {server_name}")
        return server

    def client_for(self, server: GitLabServer) -> GitLabClient:
        with self._clients_lock:
            client = self._clients.get(server.name)
            if client is None:
                client = self._client_factory(server)
                self._clients[server.name] = client
            return client

    def find_project(self, server: GitLabServer, project_path: str) -> Dict[str, Any]:
        """
        Structure-tier record of a project, looked up by path.

        Uses cached projects (stale or not) first and asks GitLab only if
        the path is not cached.

        Raises:
            ProjectNotFoundError: If GitLab does not know the path
            GitLabError: If the lookup itself fails
        """
        cached = self._cache.get_projects(server.name)
        for project in cached.data or []:
            if project.get("path") == project_path:
                return project

        try:
            raw = self.client_for(server).get_project(path=project_path)
        except GitLabError as e:
            if e.status_code == 404:
                raise ProjectNotFoundError(f"Project not found: {project_path}") from e
            raise
        return normalize_project(raw)

    # ===== TIER OPERATIONS =====

    def get_projects(self, server_name: str, force_refresh: bool = False) -> FetchResult:
        """Groups & projects of a server (Structure tier)."""
        server = self.find_server(server_name)
        return self.resolve(
            Tier.STRUCTURE,
            structure_key(server.name),
            lambda: self._fetch_projects(server),
            force_refresh,
        )

    def _fetch_projects(self, server: GitLabServer) -> List[Dict[str, Any]]:
        client = self.client_for(server)
        projects: Dict[str, Dict[str, Any]] = {}

        for project in server.projects:
            normalized = normalize_project(client.get_project(project_id=project.id, path=project.path))
            projects[normalized["path"]] = normalized

        for group in server.groups:
            for raw in client.get_group_projects(
                group_id=group.id,
                path=group.path,
                include_subgroups=group.include_subgroups,
            ):
                normalized = normalize_project(raw)
                projects.setdefault(normalized["path"], normalized)

        return [project for project in projects.values() if not self.is_project_excluded(project)]

    def is_project_excluded(self, project: Dict[str, Any]) -> bool:
        """True if any exclude pattern occurs in the project's name or path, ignoring case."""
        name = (project.get("name") or "").lower()
        path = (project.get("path") or "").lower()
        return any(pattern in name or pattern in path for pattern in self._exclude_projects)

    def get_branches(self, server_name: str, project_path: str, force_refresh: bool = False) -> FetchResult:
        """Branches of a project (Branches tier)."""
        server = self.find_server(server_name)

        def fetch():
            project = self.find_project(server, project_path)
            branches = self.client_for(server).get_branches(project["id"])
            return [normalize_branch(branch) for branch in branches]

        return self.resolve(Tier.BRANCHES, branches_key(project_path), fetch, force_refresh)

    def get_pipeline(
        self,
        server_name: str,
        project_path: str,
        branch_name: str,
        include_jobs: bool = False,
        force_refresh: bool = False,
    ) -> FetchResult:
        """Latest pipeline of a branch, with or without its jobs (Pipelines tier)."""
        server = self.find_server(server_name)

        def fetch():
            project = self.find_project(server, project_path)
            client = self.client_for(server)
            pipeline = client.get_latest_pipeline(project["id"], branch_name)
            if include_jobs and pipeline:
                pipeline = {**pipeline, "jobs": client.get_pipeline_jobs(project["id"], pipeline["id"])}
            return pipeline

        return self.resolve(
            Tier.PIPELINES,
            pipeline_key(project_path, branch_name, include_jobs),
            fetch,
            force_refresh,
        )

    def get_statistics(
        self,
        server_name: str,
        project_id: Union[int, str],
        branch_name: str,
        force_refresh: bool = False,
    ) -> FetchResult:
        """Median duration estimate of a branch (Statistics tier)."""
        server = self.find_server(server_name)

        def fetch():
            samples = self.client_for(server).get_recent_pipelines(
                project_id, branch_name, self._sample_count
            )
            return estimate(project_id, branch_name, samples, self._sample_count).to_dict()

        return self.resolve(
            Tier.STATISTICS,
            statistics_key(project_id, branch_name),
            fetch,
            force_refresh,
        )

    # ===== LIFECYCLE =====

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        with self._refreshing_lock:
            stats["refreshing_count"] = len(self._refreshing)
        stats["coalescer"] = self._coalescer.get_stats()
        return stats

    def shutdown(self) -> None:
        """Stop the refill pool; queued refills are dropped."""
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
