"""
Bloom control plane FastAPI application.

Provisions one ephemeral agent instance on demand, tracks its lifecycle,
sessions and cost, and gates every command through admission control.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn
from loguru import logger

from . import __version__
from .core.config import Settings
from .core.connection_manager import ConnectionManager
from .core.dependencies import get_settings
from .core.initializer import Initializer
from .core.logging import configure_logging
from .middleware import add_monitoring_middleware
from .api import commands, webhooks, health


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Connection pools and the region catalog are created once at startup,
    stored in app.state for the dependencies, and closed at shutdown.
    """
    settings: Settings = get_settings()
    configure_logging(settings)
    logger.info(f"Starting {settings.app_name} {__version__} ({settings.environment})")

    conn_manager = ConnectionManager(settings)
    await conn_manager.initialize()
    app.state.connection_manager = conn_manager

    initializer = Initializer(region_file_path=settings.region_config_file)
    await initializer.initialize()
    app.state.initializer = initializer

    logger.info(f"Regions: {[region.value for region in initializer.get_region_catalog().regions()]}")
    logger.info(f"{settings.app_name} started successfully")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    if hasattr(app.state, 'connection_manager'):
        await app.state.connection_manager.close()
        logger.info("Connection manager closed")

    logger.info(f"{settings.app_name} shut down gracefully")


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Bloom Control Plane",
        description="Lifecycle, admission and cost control for an ephemeral agent instance",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if not settings.is_production() else None,
        redoc_url=None,
    )

    add_monitoring_middleware(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    app.include_router(commands.router, prefix="/api")
    app.include_router(health.router, prefix="/api")
    app.include_router(webhooks.router, prefix="/webhook")

    @app.get("/")
    async def root():
        """Service banner."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "endpoints": {
                "commands": [
                    "/api/start",
                    "/api/stop",
                    "/api/status",
                    "/api/task",
                    "/api/projects",
                    "/api/sync",
                    "/api/history",
                    "/api/config"
                ],
                "webhooks": [
                    "/webhook/ready",
                    "/webhook/heartbeat",
                    "/webhook/task-complete",
                    "/webhook/idle-timeout"
                ],
                "health": "/api/health",
                "metrics": "/metrics"
            }
        }

    return app


app = create_app()


def main():
    """
    Main entry point for running the control plane.
    """
    settings = get_settings()
    logger.info(f"Starting control plane on {settings.host}:{settings.port}")

    uvicorn.run(
        "bloom_control.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
        access_log=False,
        loop="asyncio",
    )


if __name__ == "__main__":
    main()
