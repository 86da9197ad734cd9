"""
Admission control - rate, cost and abuse gates.
"""

from .admission import (
    AdmissionService,
    RateLimitConfig,
    RateLimitResult,
    CostCheckResult,
    AbuseCheckResult,
    RATE_LIMITS
)

__all__ = [
    "AdmissionService",
    "RateLimitConfig",
    "RateLimitResult",
    "CostCheckResult",
    "AbuseCheckResult",
    "RATE_LIMITS"
]
