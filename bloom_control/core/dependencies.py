"""
Dependency injection for FastAPI without global state.
"""
import secrets
from typing import Annotated, Optional
from fastapi import Depends, Header, Request
from functools import lru_cache
import redis.asyncio as redis
import httpx
from loguru import logger

from .config import Settings
from .connection_manager import ConnectionManager
from .exceptions import (
    AuthenticationError,
    RateLimitExceededError,
    ServiceUnavailableError,
    to_http_error
)
from .initializer import Initializer, RegionCatalog
from ..clients import (
    RedisClient,
    BaseProvisioner,
    BaseDnsUpdater,
    BaseInstanceMessenger,
    HetznerProvisioner,
    CloudflareDns,
    InstanceClient
)
from ..middleware.monitoring import record_admission_denied
from ..services.admission.admission import AdmissionService
from ..services.defense.defense import DefenseService
from ..services.ledger.ledger import Ledger
from ..services.lifecycle.lifecycle import LifecycleOrchestrator
from ..utils.security import sanitize_for_logging


# Configuration (cached at module level for efficiency)
@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Connection Dependencies (from app.state - shared resources)
async def get_connection_manager(request: Request) -> ConnectionManager:
    """
    Get connection manager from app state.
    This is the ONLY place where we access app.state for connections.
    """
    if not hasattr(request.app.state, 'connection_manager'):
        logger.error("ConnectionManager not found in app.state; was the lifespan run?")
        raise ServiceUnavailableError("Connection manager")
    return request.app.state.connection_manager


async def get_redis(
    conn_manager: Annotated[ConnectionManager, Depends(get_connection_manager)]
) -> redis.Redis:
    """Get Redis connection from pool."""
    return await conn_manager.get_redis()


async def get_http_client(
    conn_manager: Annotated[ConnectionManager, Depends(get_connection_manager)]
) -> httpx.AsyncClient:
    """Get HTTP client from shared pool."""
    return await conn_manager.get_http_client()


async def get_region_catalog(request: Request) -> RegionCatalog:
    """
    Get the region catalog loaded at startup.
    Falls back to the built-in regions if the app was started without an Initializer.
    """
    initializer: Optional[Initializer] = getattr(request.app.state, 'initializer', None)
    if initializer is None:
        return RegionCatalog.default()
    return initializer.get_region_catalog()


# Service Dependencies (created per request, each holding only its resource handle)
async def get_redis_client(
    redis_conn: Annotated[redis.Redis, Depends(get_redis)]
) -> RedisClient:
    """Lightweight wrapper around the pooled Redis connection."""
    return RedisClient(redis_conn)


async def get_ledger(
    redis_client: Annotated[RedisClient, Depends(get_redis_client)]
) -> Ledger:
    return Ledger(redis_client)


async def get_admission_service(
    redis_client: Annotated[RedisClient, Depends(get_redis_client)],
    settings: Annotated[Settings, Depends(get_settings)]
) -> AdmissionService:
    return AdmissionService(
        redis_client,
        daily_cost_limit=settings.daily_cost_limit,
        suspicion_threshold=settings.abuse_score_threshold,
    )


async def get_defense_service() -> DefenseService:
    """Stateless; created per request."""
    return DefenseService()


# External collaborators
async def get_provisioner(
    http_client: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    settings: Annotated[Settings, Depends(get_settings)]
) -> BaseProvisioner:
    return HetznerProvisioner(
        http_client,
        settings.hetzner_api_token,
        base_url=settings.hetzner_api_url,
        ssh_key_id=settings.hetzner_ssh_key_id,
        image=settings.server_image,
    )


async def get_dns_updater(
    http_client: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    settings: Annotated[Settings, Depends(get_settings)]
) -> BaseDnsUpdater:
    return CloudflareDns(
        http_client,
        settings.cloudflare_api_token,
        settings.cloudflare_zone_id,
        settings.dns_record_name,
        base_url=settings.cloudflare_api_url,
    )


async def get_instance_client(
    http_client: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    settings: Annotated[Settings, Depends(get_settings)]
) -> BaseInstanceMessenger:
    return InstanceClient(http_client, settings.webhook_secret, port=settings.instance_port)


async def get_orchestrator(
    ledger: Annotated[Ledger, Depends(get_ledger)],
    admission: Annotated[AdmissionService, Depends(get_admission_service)],
    defense: Annotated[DefenseService, Depends(get_defense_service)],
    provisioner: Annotated[BaseProvisioner, Depends(get_provisioner)],
    dns: Annotated[BaseDnsUpdater, Depends(get_dns_updater)],
    instance: Annotated[BaseInstanceMessenger, Depends(get_instance_client)],
    region_catalog: Annotated[RegionCatalog, Depends(get_region_catalog)],
    settings: Annotated[Settings, Depends(get_settings)]
) -> LifecycleOrchestrator:
    """Wire the orchestrator from its per-request collaborators."""
    return LifecycleOrchestrator(
        ledger, admission, defense, provisioner, dns, instance, region_catalog, settings
    )


# Caller identification and auth
def get_caller_id(request: Request) -> str:
    """
    Identify the caller for admission counters.
    Prefers the edge-provided client address over proxy headers.
    """
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def verify_webhook_secret(
    settings: Annotated[Settings, Depends(get_settings)],
    authorization: Annotated[Optional[str], Header()] = None
) -> None:
    """Webhooks must present the shared secret as a bearer token."""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing bearer credential")

    token = authorization[len("Bearer "):]
    if not secrets.compare_digest(token.encode(), settings.webhook_secret.encode()):
        logger.warning("Webhook called with an invalid secret")
        raise AuthenticationError("Invalid webhook secret")


class RateLimiter:
    """
    Per-operation admission gate: rate limit check, advisory abuse
    score, then the request is counted.

    Usage: caller_id: Annotated[str, Depends(RateLimiter("api/start"))]
    """

    def __init__(self, endpoint: str):
        self.endpoint = endpoint

    async def __call__(
        self,
        request: Request,
        admission: Annotated[AdmissionService, Depends(get_admission_service)],
        settings: Annotated[Settings, Depends(get_settings)],
        caller_id: Annotated[str, Depends(get_caller_id)]
    ) -> str:
        if not settings.rate_limit_enabled:
            return caller_id

        result = await admission.check_rate_limit(self.endpoint, caller_id)
        if not result.allowed:
            record_admission_denied(self.endpoint, "rate_limit")
            raise to_http_error(RateLimitExceededError(result.message, result.retry_after))

        content_length = request.headers.get("content-length")
        abuse = await admission.check_for_abuse(
            caller_id,
            payload_size=int(content_length) if content_length and content_length.isdigit() else None,
            user_agent=request.headers.get("user-agent"),
        )
        if abuse.suspicious:
            logger.warning(
                f"Admitting suspicious request to {self.endpoint} from "
                f"{sanitize_for_logging(caller_id)}: {abuse.reasons}"
            )

        await admission.record_request(self.endpoint, caller_id)
        return caller_id
