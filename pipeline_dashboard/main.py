"""
GitLab Pipeline Dashboard - JSON API over the tiered pipeline cache
Every tier answers immediately, stale data included, and refreshes itself
in the background.
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request

from config.settings import Settings, settings as default_settings
from pipeline_dashboard.cache.manager import create_cache_manager
from pipeline_dashboard.cache.statistics import format_duration, format_pipeline_duration
from pipeline_dashboard.orchestrator import (
    FetchOrchestrator,
    FetchResult,
    ProjectNotFoundError,
    ServerNotFoundError,
    UpstreamFetchError,
    default_client_factory,
)
from pipeline_dashboard.schemas import (
    CacheCleared,
    CachedPayload,
    CacheStats,
    PipelinePayload,
    ServerList,
    StatisticsPayload,
)

logger = logging.getLogger("api")

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "GitLab Pipeline Dashboard"

router = APIRouter()


def build_orchestrator(settings: Settings) -> FetchOrchestrator:
    """Construct the cache and orchestrator once at startup."""
    cache = create_cache_manager(settings)
    return FetchOrchestrator(
        cache,
        settings.gitlab_servers,
        client_factory=default_client_factory(settings.gitlab_timeout),
        exclude_projects=settings.exclude_projects,
        statistics_sample_count=settings.statistics_sample_count,
        max_refresh_workers=settings.refresh_workers,
        coalesce_timeout=settings.coalesce_timeout,
    )


def get_orchestrator(request: Request) -> FetchOrchestrator:
    return request.app.state.orchestrator


def _serve(fetch: Callable[[], FetchResult]) -> Dict[str, Any]:
    """Run a tier lookup and map its failures to HTTP errors."""
    try:
        return fetch().to_dict()
    except (ServerNotFoundError, ProjectNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UpstreamFetchError as e:
        logger.error(str(e))
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}


@router.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }


@router.get("/api/servers", response_model=ServerList)
def list_servers(orchestrator: FetchOrchestrator = Depends(get_orchestrator)):
    return {"servers": orchestrator.server_names}


@router.get("/api/servers/{server_name}/projects", response_model=CachedPayload)
def server_projects(
    server_name: str,
    force: bool = False,
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
):
    """Groups & projects of a server (30 min tier)."""
    return _serve(lambda: orchestrator.get_projects(server_name, force_refresh=force))


@router.get("/api/servers/{server_name}/branches", response_model=CachedPayload)
def project_branches(
    server_name: str,
    project: str = Query(..., min_length=1, description="Project path, e.g. group/app"),
    force: bool = False,
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
):
    """Branches of a project (5 min tier)."""
    return _serve(lambda: orchestrator.get_branches(server_name, project, force_refresh=force))


@router.get("/api/servers/{server_name}/pipeline", response_model=PipelinePayload)
def branch_pipeline(
    server_name: str,
    project: str = Query(..., min_length=1),
    branch: str = Query(..., min_length=1),
    include_jobs: bool = Query(False, alias="includeJobs"),
    force: bool = False,
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
):
    """Latest pipeline of a branch (5 sec tier)."""
    payload = _serve(lambda: orchestrator.get_pipeline(
        server_name, project, branch, include_jobs=include_jobs, force_refresh=force,
    ))

    pipeline = payload["data"]
    if pipeline:
        estimated: Optional[float] = None
        if pipeline.get("project_id") is not None:
            # Cache read only; estimates are refreshed by their own endpoint
            stats = orchestrator.cache.get_statistics(pipeline["project_id"], branch).data
            if stats:
                estimated = stats.get("estimatedDuration")
        payload["durationText"] = format_pipeline_duration(pipeline, estimated)
    return payload


@router.get("/api/servers/{server_name}/statistics", response_model=StatisticsPayload)
def branch_statistics(
    server_name: str,
    project_id: int = Query(..., alias="projectId"),
    branch: str = Query(..., min_length=1),
    force: bool = False,
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
):
    """Median pipeline duration of a branch (30 min tier)."""
    payload = _serve(lambda: orchestrator.get_statistics(
        server_name, project_id, branch, force_refresh=force,
    ))

    stats = payload["data"]
    if stats and stats.get("estimatedDuration") is not None:
        payload["estimatedDurationText"] = format_duration(stats["estimatedDuration"])
    return payload


@router.get("/cache/stats", response_model=CacheStats)
def cache_stats(orchestrator: FetchOrchestrator = Depends(get_orchestrator)):
    """Get cache statistics."""
    return {
        "cache": orchestrator.cache.get_stats(),
        "orchestrator": orchestrator.get_stats(),
    }


@router.delete("/cache", response_model=CacheCleared)
def clear_cache(orchestrator: FetchOrchestrator = Depends(get_orchestrator)):
    """Clear every cache tier, in memory and on disk."""
    return {"cleared": orchestrator.cache.clear()}


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[FetchOrchestrator] = None,
) -> FastAPI:
    """
    Build the API with explicitly constructed collaborators.

    Args:
        settings: Application settings (environment by default)
        orchestrator: Pre-built orchestrator, mainly for tests
    """
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level.upper())

    orchestrator = orchestrator or build_orchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        orchestrator.shutdown()

    app = FastAPI(
        title=APP_NAME,
        description="GitLab pipeline status served from a layered cache",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.include_router(router)
    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(create_app(), host=default_settings.host, port=default_settings.port)
