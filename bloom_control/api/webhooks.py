"""
Instance webhook endpoints (/webhook/*).

All require the shared secret and are safe to redeliver: a repeated
ready, heartbeat, task-complete or idle-timeout never double-closes a
session or corrupts state.
"""

from typing import Annotated
from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from ..core.dependencies import RateLimiter, get_orchestrator, verify_webhook_secret
from ..core.exceptions import BloomError, to_http_error
from ..models.requests import ReadyWebhook, HeartbeatWebhook, TaskCompleteWebhook, IdleTimeoutWebhook
from ..models.responses import WebhookAck
from ..services.lifecycle.lifecycle import LifecycleOrchestrator


router = APIRouter(
    tags=["webhooks"],
    dependencies=[Depends(verify_webhook_secret)]
)

Orchestrator = Annotated[LifecycleOrchestrator, Depends(get_orchestrator)]


def _raise_http(operation: str, error: Exception):
    if isinstance(error, HTTPException):
        raise error
    if isinstance(error, BloomError):
        logger.warning(f"{operation} failed: {str(error)}")
        raise to_http_error(error) from error
    logger.error(f"{operation}: {str(error)}")
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@router.post("/ready", response_model=WebhookAck)
async def ready(
    payload: ReadyWebhook,
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("webhook/ready"))]
):
    """Instance booted and is reachable at `ip`."""
    try:
        logger.info(f"Ready from instance {payload.instance_id} at {payload.address}")
        return await orchestrator.handle_ready(payload.instance_id, payload.address)
    except Exception as e:
        _raise_http("webhook/ready", e)


@router.post("/heartbeat", response_model=WebhookAck)
async def heartbeat(
    payload: HeartbeatWebhook,
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("webhook/heartbeat"))]
):
    try:
        return await orchestrator.handle_heartbeat(payload.idle_seconds, payload.state)
    except Exception as e:
        _raise_http("webhook/heartbeat", e)


@router.post("/task-complete", response_model=WebhookAck)
async def task_complete(
    payload: TaskCompleteWebhook,
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("webhook/task-complete"))]
):
    """Agent finished a task; may request shutdown."""
    try:
        return await orchestrator.handle_task_complete(
            payload.status,
            task_id=payload.task_id,
            trigger_shutdown=payload.trigger_shutdown,
            output=payload.output,
            tokens_used=payload.tokens_used,
        )
    except Exception as e:
        _raise_http("webhook/task-complete", e)


@router.post("/idle-timeout", response_model=WebhookAck)
async def idle_timeout(
    orchestrator: Orchestrator,
    caller_id: Annotated[str, Depends(RateLimiter("webhook/idle-timeout"))],
    payload: IdleTimeoutWebhook = IdleTimeoutWebhook()
):
    """Instance idle timer fired; sync and shut down."""
    try:
        logger.info(f"Idle timeout reported at {payload.timestamp}")
        return await orchestrator.handle_idle_timeout()
    except Exception as e:
        _raise_http("webhook/idle-timeout", e)
