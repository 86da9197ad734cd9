"""
Health check endpoint.
"""

import time
from typing import Annotated
from fastapi import APIRouter, Depends
from loguru import logger

from ..core.config import Settings
from ..core.connection_manager import ConnectionManager
from ..core.dependencies import get_connection_manager, get_settings
from ..models.responses import HealthResponse


router = APIRouter(
    tags=["health"]
)

# Track server start time
_start_time = time.time()


@router.get("/health", response_model=HealthResponse)
async def health_check(
    conn_manager: Annotated[ConnectionManager, Depends(get_connection_manager)],
    settings: Annotated[Settings, Depends(get_settings)]
):
    """Health check endpoint."""
    try:
        checks = await conn_manager.health_check()
        redis_healthy = checks.get("redis", False)

        return HealthResponse(
            status="healthy" if redis_healthy else "degraded",
            version=settings.version,
            uptime=time.time() - _start_time,
            redis=redis_healthy,
        )

    except Exception as e:
        logger.error(f"Health check failed: {str(e)}")
        return HealthResponse(
            status="unhealthy",
            version=settings.version,
            uptime=time.time() - _start_time,
        )
