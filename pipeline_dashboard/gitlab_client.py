"""
GitLab REST API v4 client.

Fetches the raw data behind each cache tier: projects, branches, latest
pipelines (optionally with jobs) and recent pipelines for duration stats.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests
from requests.structures import CaseInsensitiveDict
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from pipeline_dashboard.cache.statistics import NON_REPRESENTATIVE_STATUSES

logger = logging.getLogger("gitlab_client")

GROUP_PAGE_SIZE = 100


class GitLabError(Exception):
    """A GitLab request failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GitLabTransientError(GitLabError):
    """Server-side or rate-limit failure worth retrying."""


def _encode_path(path: str) -> str:
    """URL-encode a namespaced path (``group/project`` -> ``group%2Fproject``)."""
    return quote(path, safe="")


def normalize_project(project: Dict[str, Any]) -> Dict[str, Any]:
    """Structure tier shape of a project."""
    return {
        "id": project.get("id"),
        "name": project.get("name"),
        "path": project.get("path_with_namespace"),
        "url": project.get("web_url"),
    }


def normalize_branch(branch: Dict[str, Any]) -> Dict[str, Any]:
    """Branches tier shape of a branch."""
    commit = branch.get("commit") or {}
    return {
        "name": branch.get("name"),
        "commitTitle": commit.get("title"),
        "commitShortId": commit.get("short_id"),
    }


class GitLabClient:
    """
    Thin wrapper around one GitLab instance.

    All failures surface as GitLabError. Connection errors, timeouts, 5xx
    and 429 responses are retried with exponential backoff first.
    """

    def __init__(self, base_url: str, token: Optional[str], timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/v4"
        self.timeout = timeout
        self.session = requests.Session()
        self.set_token(token)

    def set_token(self, token: Optional[str]) -> None:
        """Swap the token used for subsequent requests."""
        if token:
            self.session.headers["PRIVATE-TOKEN"] = token
        else:
            self.session.headers.pop("PRIVATE-TOKEN", None)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type(
            (requests.ConnectionError, requests.Timeout, GitLabTransientError)
        ),
        reraise=True,
    )
    def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """GET ``path`` with retry on transient failures."""
        url = f"{self.api_url}{path}"
        logger.debug(f"→ GET {url}")
        response = self.session.get(url, params=params, timeout=self.timeout)
        logger.debug(f"← {response.status_code} {response.reason}")

        if response.status_code >= 500 or response.status_code == 429:
            raise GitLabTransientError(
                f"{response.status_code} {response.reason}", response.status_code
            )
        if response.status_code >= 400:
            raise GitLabError(f"{response.status_code} {response.reason}", response.status_code)
        return response

    def _get_json(
        self,
        path: str,
        what: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Any, CaseInsensitiveDict]:
        try:
            response = self._request(path, params)
            return response.json(), response.headers
        except GitLabError as e:
            raise GitLabError(f"Failed to fetch {what}: {e}", e.status_code) from e
        except (requests.RequestException, ValueError) as e:
            raise GitLabError(f"Failed to fetch {what}: {e}") from e

    # ===== TOKENS =====

    def get_token_info(self) -> Dict[str, Any]:
        """Details of the current personal access token."""
        data, _ = self._get_json("/personal_access_tokens/self", "token info")
        return data

    # ===== PROJECTS & GROUPS =====

    def get_project(self, project_id: Optional[int] = None, path: Optional[str] = None) -> Dict[str, Any]:
        """Fetch one project by id or full path."""
        if project_id is None and not path:
            raise ValueError("project_id or path is required")
        ref = str(project_id) if project_id is not None else _encode_path(path)
        data, _ = self._get_json(f"/projects/{ref}", "project")
        return data

    def get_group_projects(
        self,
        group_id: Optional[int] = None,
        path: Optional[str] = None,
        include_subgroups: bool = False,
    ) -> List[Dict[str, Any]]:
        """All projects of a group, following pagination."""
        if group_id is None and not path:
            raise ValueError("group_id or path is required")
        ref = str(group_id) if group_id is not None else _encode_path(path)

        params: Dict[str, Any] = {
            "per_page": GROUP_PAGE_SIZE,
            "simple": False,
            "order_by": "name",
            "sort": "asc",
        }
        if include_subgroups:
            params["include_subgroups"] = True

        projects: List[Dict[str, Any]] = []
        page = 1
        while True:
            data, headers = self._get_json(
                f"/groups/{ref}/projects", "group projects", {**params, "page": page}
            )
            projects.extend(data)

            try:
                total_pages = int(headers.get("X-Total-Pages") or 0)
            except ValueError:
                total_pages = 0
            if page >= total_pages:
                break
            page += 1

        return projects

    # ===== BRANCHES =====

    def get_branches(self, project_id: int) -> List[Dict[str, Any]]:
        data, _ = self._get_json(f"/projects/{project_id}/repository/branches", "branches")
        return data

    # ===== PIPELINES =====

    def get_latest_pipeline(self, project_id: int, branch_name: str) -> Optional[Dict[str, Any]]:
        """
        Most recently updated pipeline of a branch.

        Returns None if the branch has no pipeline, or if pipelines are
        disabled for the project (403).
        """
        try:
            data, _ = self._get_json(
                f"/projects/{project_id}/pipelines",
                "pipeline",
                {"ref": branch_name, "per_page": 1, "order_by": "updated_at", "sort": "desc"},
            )
        except GitLabError as e:
            if e.status_code == 403:
                return None
            raise
        return data[0] if data else None

    def get_recent_pipelines(
        self,
        project_id: int,
        branch_name: str,
        count: int = 10,
    ) -> List[Dict[str, Any]]:
        """
        Last ``count`` finished pipelines usable for duration estimates.

        Twice as many are requested so that canceled, skipped and
        zero-duration pipelines can be dropped.
        """
        try:
            data, _ = self._get_json(
                f"/projects/{project_id}/pipelines",
                "recent pipelines",
                {"ref": branch_name, "per_page": count * 2, "order_by": "updated_at", "sort": "desc"},
            )
        except GitLabError as e:
            if e.status_code == 403:
                return []
            raise

        valid = [
            p for p in data
            if p.get("status") not in NON_REPRESENTATIVE_STATUSES
            and isinstance(p.get("duration"), (int, float))
            and p["duration"] > 0
        ]
        return valid[:count]

    def get_pipeline_jobs(self, project_id: int, pipeline_id: int) -> List[Dict[str, Any]]:
        try:
            data, _ = self._get_json(
                f"/projects/{project_id}/pipelines/{pipeline_id}/jobs", "pipeline jobs"
            )
        except GitLabError as e:
            if e.status_code == 403:
                return []
            raise
        return data
