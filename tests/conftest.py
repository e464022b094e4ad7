"""
Shared fixtures: a controllable clock, executors that run refills
deterministically, and an in-memory stand-in for the GitLab client.
"""
import threading
from collections import Counter
from concurrent.futures import Executor, Future
from typing import Any, Callable, Dict, List, Optional

import pytest

from config.settings import GitLabServer, GroupConfig, ProjectConfig
from pipeline_dashboard.cache.manager import TieredCacheManager
from pipeline_dashboard.gitlab_client import GitLabError


class FakeClock:
    """Epoch seconds that only move when told to."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InlineExecutor(Executor):
    """Runs submitted work immediately in the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Queues submitted work until run_all() is called."""

    def __init__(self):
        self.pending: List[Callable[[], Any]] = []

    def submit(self, fn, *args, **kwargs):
        self.pending.append(lambda: fn(*args, **kwargs))
        return Future()

    def run_all(self) -> int:
        count = 0
        while self.pending:
            self.pending.pop(0)()
            count += 1
        return count


class FakeGitLabClient:
    """
    In-memory GitLab with call counting.

    Set ``fail_with`` to make every call raise, and ``gate`` to make
    get_branches block until the event is set.
    """

    def __init__(self):
        self.calls: Counter = Counter()
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.projects: Dict[str, Dict[str, Any]] = {
            "group/app": {
                "id": 42,
                "name": "app",
                "path_with_namespace": "group/app",
                "web_url": "https://gitlab.example.com/group/app",
            },
            "group/lib": {
                "id": 43,
                "name": "lib",
                "path_with_namespace": "group/lib",
                "web_url": "https://gitlab.example.com/group/lib",
            },
        }
        self.branches: Dict[int, List[Dict[str, Any]]] = {
            42: [
                {"name": "main", "commit": {"title": "Initial commit", "short_id": "abc1234"}},
                {"name": "feature/x", "commit": {"title": "Add x", "short_id": "def5678"}},
            ],
        }
        self.pipeline_status = "success"
        self.recent_pipelines: List[Dict[str, Any]] = []

    def _call(self, name: str) -> None:
        self.calls[name] += 1
        if self.fail_with is not None:
            raise self.fail_with

    def get_project(self, project_id=None, path=None):
        self._call("get_project")
        for project in self.projects.values():
            if project["id"] == project_id or project["path_with_namespace"] == path:
                return project
        raise GitLabError("Failed to fetch project: 404 Not Found", 404)

    def get_group_projects(self, group_id=None, path=None, include_subgroups=False):
        self._call("get_group_projects")
        return [p for p in self.projects.values() if p["path_with_namespace"].startswith(f"{path}/")]

    def get_branches(self, project_id):
        self._call("get_branches")
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return self.branches.get(project_id, [])

    def get_latest_pipeline(self, project_id, branch_name):
        self._call("get_latest_pipeline")
        return {
            "id": 1000 + self.calls["get_latest_pipeline"],
            "project_id": project_id,
            "ref": branch_name,
            "status": self.pipeline_status,
            "duration": 120,
        }

    def get_pipeline_jobs(self, project_id, pipeline_id):
        self._call("get_pipeline_jobs")
        return [{"id": 1, "name": "build", "stage": "build", "status": "success"}]

    def get_recent_pipelines(self, project_id, branch_name, count=10):
        self._call("get_recent_pipelines")
        return self.recent_pipelines[:count]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    """Tiered cache in a temp dir with the default TTLs and a fake clock."""
    return TieredCacheManager(tmp_path / "cache", clock=clock)


@pytest.fixture
def fake_gitlab():
    return FakeGitLabClient()


@pytest.fixture
def server():
    return GitLabServer(
        name="main",
        url="https://gitlab.example.com",
        token="glpat-test",
        projects=[ProjectConfig(path="group/app")],
        groups=[GroupConfig(path="group")],
    )
