"""
Dashboard command endpoints (/api/*).

Every route passes its operation's rate limit first; spend-incurring and
task-carrying commands are further gated inside the orchestrator.
"""

from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, Query, status
from loguru import logger

from ..core.dependencies import RateLimiter, get_orchestrator
from ..core.exceptions import BloomError, AdmissionDeniedError, to_http_error
from ..middleware.monitoring import record_admission_denied
from ..models.internal import Repository
from ..models.requests import (
    StartRequest,
    StopRequest,
    TaskRequest,
    ConfigUpdateRequest,
    RepositoryRequest,
    RepositoryUpdateRequest
)
from ..models.responses import (
    StartResponse,
    StopResponse,
    StatusResponse,
    TaskResponse,
    ProjectsResponse,
    SyncResponse,
    HistoryResponse,
    ConfigResponse
)
from ..services.lifecycle.lifecycle import LifecycleOrchestrator


router = APIRouter(
    tags=["commands"]
)

Orchestrator = Annotated[LifecycleOrchestrator, Depends(get_orchestrator)]


def _raise_http(operation: str, error: Exception):
    """Re-raise an error from the orchestrator as an HTTP error."""
    if isinstance(error, HTTPException):
        raise error
    if isinstance(error, BloomError):
        if isinstance(error, AdmissionDeniedError):
            record_admission_denied(operation, type(error).__name__)
        logger.info(f"{operation} rejected: {str(error)}")
        raise to_http_error(error) from error
    logger.error(f"{operation}: {str(error)}")
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@router.post("/start", response_model=StartResponse)
async def start(
    request: StartRequest,
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/start"))]
):
    """
    Provision the instance and open a session.

    Does not wait for the instance to boot; poll /api/status until RUNNING.
    """
    try:
        return await orchestrator.start(request.region, request.task, caller_id, auto_shutdown=request.auto_shutdown)
    except Exception as e:
        _raise_http("api/start", e)


@router.post("/stop", response_model=StopResponse)
async def stop(
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/stop"))],
    request: StopRequest = StopRequest()
):
    """Sync (unless forced) and tear the instance down."""
    try:
        return await orchestrator.stop(force=request.force, commit_pending=request.commit_pending)
    except Exception as e:
        _raise_http("api/stop", e)


@router.get("/status", response_model=StatusResponse)
async def get_status(
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/status"))]
):
    try:
        return await orchestrator.status()
    except Exception as e:
        _raise_http("api/status", e)


@router.post("/task", response_model=TaskResponse)
async def send_task(
    request: TaskRequest,
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/task"))]
):
    """Validate and dispatch a task to the running agent."""
    try:
        return await orchestrator.send_task(request.task, request.mode, request.auto_shutdown_on_complete)
    except Exception as e:
        _raise_http("api/task", e)


@router.get("/projects", response_model=ProjectsResponse)
async def list_projects(
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/projects"))]
):
    try:
        return await orchestrator.list_projects()
    except Exception as e:
        _raise_http("api/projects", e)


@router.post("/projects", response_model=Repository, status_code=status.HTTP_201_CREATED)
async def add_project(
    request: RepositoryRequest,
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/projects"))]
):
    try:
        return await orchestrator.add_project(request.name, request.url, request.branch, request.path)
    except Exception as e:
        _raise_http("api/projects", e)


@router.patch("/projects/{repository_id}", response_model=Repository)
async def update_project(
    repository_id: int,
    request: RepositoryUpdateRequest,
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/projects"))]
):
    try:
        return await orchestrator.update_project(repository_id, request.enabled)
    except Exception as e:
        _raise_http("api/projects", e)


@router.delete("/projects/{repository_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(
    repository_id: int,
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/projects"))]
):
    try:
        await orchestrator.delete_project(repository_id)
    except Exception as e:
        _raise_http("api/projects", e)


@router.post("/sync", response_model=SyncResponse)
async def sync(
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/sync"))]
):
    """Ask the instance to push its workspace."""
    try:
        return await orchestrator.sync()
    except Exception as e:
        _raise_http("api/sync", e)


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/history"))],
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0)
):
    try:
        return await orchestrator.history(limit=limit, offset=offset)
    except Exception as e:
        _raise_http("api/history", e)


@router.get("/config", response_model=ConfigResponse)
async def get_config(
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/config"))]
):
    try:
        return await orchestrator.get_config()
    except Exception as e:
        _raise_http("api/config", e)


@router.post("/config", response_model=ConfigResponse)
async def update_config(
    request: ConfigUpdateRequest,
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("api/config"))]
):
    """Partial update of the operator config."""
    try:
        return await orchestrator.update_config(request)
    except Exception as e:
        _raise_http("api/config", e)
