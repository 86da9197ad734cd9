"""
Connection management.
"""
import redis.asyncio as redis
from typing import Dict, Any
import httpx
from loguru import logger

from .config import Settings


class ConnectionManager:
    """
    Centralized connection management without global state.
    This is initialized once in app lifespan and passed via app.state.

    Holds the Redis connection pool backing both the ledger and the
    admission counters, and the HTTP client shared by the provisioning,
    DNS and instance collaborators.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._pools: Dict[str, Any] = {}
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize all connection pools at startup."""
        if self._initialized:
            logger.warning("ConnectionManager already initialized, skipping")
            return

        logger.info("Initializing connection pools...")

        self._pools['redis'] = redis.ConnectionPool.from_url(
            self.settings.redis_url,
            max_connections=self.settings.redis_max_connections,
            decode_responses=True,
            socket_keepalive=True,
            retry_on_timeout=True,
            health_check_interval=self.settings.redis_health_check_interval,
        )

        # Test Redis connection
        try:
            test_redis = redis.Redis(connection_pool=self._pools['redis'])
            await test_redis.ping()
            logger.info("Redis connection pool initialized and tested successfully")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

        # HTTP client pool for provider, DNS and instance calls
        self._pools['http'] = httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.request_timeout),
            limits=httpx.Limits(
                max_connections=self.settings.http_max_connections,
                max_keepalive_connections=self.settings.http_max_connections // 2
            ),
            http2=True,
            follow_redirects=True,
        )

        self._initialized = True
        logger.info("Connection pools initialized successfully")

    async def get_redis(self) -> redis.Redis:
        """
        Get Redis connection from pool.
        Each instance is lightweight - it just references the pool.
        """
        if not self._initialized:
            raise RuntimeError("ConnectionManager not initialized. Call initialize() first.")

        return redis.Redis(connection_pool=self._pools['redis'])

    async def get_http_client(self) -> httpx.AsyncClient:
        """Get shared HTTP client."""
        if not self._initialized:
            raise RuntimeError("ConnectionManager not initialized. Call initialize() first.")

        return self._pools['http']

    async def close(self) -> None:
        """Cleanup all connections gracefully."""
        logger.info("Closing connection pools...")

        if 'redis' in self._pools:
            try:
                await self._pools['redis'].disconnect()
                logger.info("Redis connection pool closed")
            except Exception as e:
                logger.error(f"Error closing Redis pool: {e}")

        if 'http' in self._pools:
            try:
                await self._pools['http'].aclose()
                logger.info("HTTP client closed")
            except Exception as e:
                logger.error(f"Error closing HTTP client: {e}")

        self._pools.clear()
        self._initialized = False
        logger.info("All connection pools closed")

    def is_initialized(self) -> bool:
        """Check if connection manager is initialized."""
        return self._initialized

    async def health_check(self) -> Dict[str, bool]:
        """
        Perform health checks on all connections.
        Returns a dict with the health status of each connection type.
        """
        health_status = {}

        try:
            redis_conn = await self.get_redis()
            await redis_conn.ping()
            health_status['redis'] = True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            health_status['redis'] = False

        health_status['http'] = 'http' in self._pools

        return health_status
