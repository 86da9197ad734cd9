"""
Admission Service - rate limiting, daily cost protection and abuse scoring.

Three independent gates consulted before a command touches the lifecycle:
1. Rate limits - fixed windows per (operation, caller), sized to each operation's cost
2. Cost protection - per-caller daily spend ceiling
3. Abuse scoring - advisory heuristic risk score

Counters live in Redis with TTLs and are never part of the ledger.
Check and record are separate calls, so concurrent requests from one
caller may overshoot a limit by one.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Pattern

from loguru import logger

from ...clients.redis import RedisClient
from ...utils.async_time import get_window_start, get_day_key


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: int
    max_requests: int


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int
    retry_after: int = 0
    message: Optional[str] = None


@dataclass
class CostCheckResult:
    allowed: bool
    current_spend: float
    limit: float
    message: Optional[str] = None


@dataclass
class AbuseCheckResult:
    suspicious: bool
    risk_score: int
    reasons: List[str] = field(default_factory=list)


# Operation-specific rate limits
RATE_LIMITS: Dict[str, RateLimitConfig] = {
    # Lifecycle commands - expensive, limit heavily
    "api/start": RateLimitConfig(window_seconds=3600, max_requests=2),
    "api/stop": RateLimitConfig(window_seconds=300, max_requests=10),

    # Task operations
    "api/task": RateLimitConfig(window_seconds=3600, max_requests=100),
    "api/sync": RateLimitConfig(window_seconds=3600, max_requests=10),

    # Reads (dashboard polling)
    "api/status": RateLimitConfig(window_seconds=60, max_requests=60),
    "api/history": RateLimitConfig(window_seconds=60, max_requests=30),
    "api/projects": RateLimitConfig(window_seconds=60, max_requests=30),
    "api/config": RateLimitConfig(window_seconds=60, max_requests=20),

    # Webhooks - a single known instance, most permissive
    "webhook/ready": RateLimitConfig(window_seconds=60, max_requests=10),
    "webhook/heartbeat": RateLimitConfig(window_seconds=60, max_requests=120),
    "webhook/task-complete": RateLimitConfig(window_seconds=60, max_requests=60),
    "webhook/idle-timeout": RateLimitConfig(window_seconds=60, max_requests=10),

    "default": RateLimitConfig(window_seconds=60, max_requests=100),
}

# Counters outlive their window slightly so late reads still see them
RATE_WINDOW_TTL_MARGIN = 60

# 25 hours, to cover timezone edge cases
COST_TTL_SECONDS = 86400 + 3600

DEFAULT_DAILY_COST_LIMIT = 5.0

MAX_PAYLOAD_SIZE_BYTES = 10240
RAPID_FIRE_REQUESTS_PER_WINDOW = 10
RAPID_FIRE_WINDOW_SECONDS = 2
SUSPICIOUS_USER_AGENTS: List[Pattern] = [
    re.compile(r"^curl", re.IGNORECASE),
    re.compile(r"^wget", re.IGNORECASE),
    re.compile(r"^python-requests", re.IGNORECASE),
    re.compile(r"^Go-http-client", re.IGNORECASE),
]

PAYLOAD_RISK = 30
USER_AGENT_RISK = 10
RAPID_FIRE_RISK = 50
DEFAULT_SUSPICION_THRESHOLD = 50


def _rate_limit_key(endpoint: str, identifier: str, window_start: int) -> str:
    return f"ratelimit:{endpoint}:{identifier}:{window_start}"


def _cost_key(identifier: str, day: str) -> str:
    return f"cost:{identifier}:{day}"


def _abuse_key(identifier: str, second: int) -> str:
    return f"abuse:{identifier}:{second}"


class AdmissionService:
    """Rate, cost and abuse gate backed by Redis counters."""

    def __init__(
        self,
        redis_client: RedisClient,
        daily_cost_limit: float = DEFAULT_DAILY_COST_LIMIT,
        rate_limits: Optional[Dict[str, RateLimitConfig]] = None,
        suspicion_threshold: int = DEFAULT_SUSPICION_THRESHOLD,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            redis_client: Storage for the counters
            daily_cost_limit: Per-caller daily ceiling in USD
            rate_limits: Per-operation limits, merged over RATE_LIMITS
            suspicion_threshold: Risk score at which a request is flagged
            clock: Epoch-seconds source
        """
        self.redis = redis_client
        self.daily_cost_limit = daily_cost_limit
        self.rate_limits = {**RATE_LIMITS, **(rate_limits or {})}
        self.suspicion_threshold = suspicion_threshold
        self._clock = clock

    def get_limit(self, endpoint: str) -> RateLimitConfig:
        return self.rate_limits.get(endpoint) or self.rate_limits["default"]

    async def check_rate_limit(self, endpoint: str, identifier: str) -> RateLimitResult:
        """Check whether the caller still has room in the current window."""
        config = self.get_limit(endpoint)
        now = self._clock()
        window_start = get_window_start(now, config.window_seconds)
        reset_at = window_start + config.window_seconds

        raw = await self.redis.get(_rate_limit_key(endpoint, identifier, window_start))
        current_count = int(raw or 0)

        if current_count >= config.max_requests:
            retry_after = max(1, int(reset_at - now))
            logger.warning(f"Rate limit hit for {endpoint} by {identifier}: {current_count}/{config.max_requests}")
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=reset_at,
                retry_after=retry_after,
                message=f"Rate limit exceeded. Try again in {retry_after} seconds.",
            )

        return RateLimitResult(
            allowed=True,
            remaining=config.max_requests - current_count - 1,
            reset_at=reset_at,
        )

    async def record_request(self, endpoint: str, identifier: str) -> int:
        """Count an admitted request against the current window."""
        config = self.get_limit(endpoint)
        window_start = get_window_start(self._clock(), config.window_seconds)
        return await self.redis.incr(
            _rate_limit_key(endpoint, identifier, window_start),
            ttl=config.window_seconds + RATE_WINDOW_TTL_MARGIN,
        )

    async def get_daily_spend(self, identifier: str) -> float:
        raw = await self.redis.get(_cost_key(identifier, get_day_key(self._clock())))
        return float(raw or 0.0)

    async def check_cost_limit(self, identifier: str, additional_cost: float) -> CostCheckResult:
        """Project today's spend plus `additional_cost` against the daily ceiling."""
        current_spend = await self.get_daily_spend(identifier)
        projected = current_spend + additional_cost

        # Small epsilon so float accumulation does not reject an exact fit
        if projected > self.daily_cost_limit + 1e-9:
            logger.warning(
                f"Cost limit hit for {identifier}: ${current_spend:.2f} + ${additional_cost:.2f} "
                f"> ${self.daily_cost_limit:.2f}"
            )
            return CostCheckResult(
                allowed=False,
                current_spend=current_spend,
                limit=self.daily_cost_limit,
                message=f"Daily cost limit of ${self.daily_cost_limit:.2f} exceeded. Current: ${current_spend:.2f}",
            )

        return CostCheckResult(allowed=True, current_spend=current_spend, limit=self.daily_cost_limit)

    async def record_cost(self, identifier: str, cost: float) -> float:
        """Add committed spend to today's accumulator."""
        total = await self.redis.incr_float(
            _cost_key(identifier, get_day_key(self._clock())),
            cost,
            ttl=COST_TTL_SECONDS,
        )
        logger.info(f"Recorded ${cost:.4f} for {identifier}; today ${total:.4f}")
        return total

    async def check_for_abuse(
        self,
        identifier: str,
        payload_size: Optional[int] = None,
        user_agent: Optional[str] = None
    ) -> AbuseCheckResult:
        """
        Score a request. Advisory only: the caller decides what to do with it.
        Also counts the request toward the rapid-fire detector.
        """
        reasons: List[str] = []
        risk_score = 0

        if payload_size and payload_size > MAX_PAYLOAD_SIZE_BYTES:
            reasons.append(f"Payload too large: {payload_size} bytes")
            risk_score += PAYLOAD_RISK

        if user_agent:
            for pattern in SUSPICIOUS_USER_AGENTS:
                if pattern.search(user_agent):
                    reasons.append(f"Suspicious user agent: {user_agent[:80]}")
                    risk_score += USER_AGENT_RISK
                    break

        second = int(self._clock())
        recent = 0
        for offset in range(RAPID_FIRE_WINDOW_SECONDS):
            recent += int(await self.redis.get(_abuse_key(identifier, second - offset)) or 0)
        if recent > RAPID_FIRE_REQUESTS_PER_WINDOW:
            reasons.append(f"Rapid-fire requests detected: {recent} in {RAPID_FIRE_WINDOW_SECONDS}s")
            risk_score += RAPID_FIRE_RISK

        await self.redis.incr(_abuse_key(identifier, second), ttl=RAPID_FIRE_WINDOW_SECONDS)

        suspicious = risk_score >= self.suspicion_threshold
        if suspicious:
            logger.warning(f"Suspicious request from {identifier}: score={risk_score} reasons={reasons}")

        return AbuseCheckResult(suspicious=suspicious, risk_score=risk_score, reasons=reasons)
