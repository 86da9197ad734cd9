"""
Core control plane components.
"""

from .initializer import Initializer, RegionCatalog
from .exceptions import (
    APIError,
    BloomError,
    StateConflictError,
    RecordNotFoundError,
    ServiceUnavailableError,
    RateLimitError,
    AuthenticationError
)

__all__ = [
    "Initializer",
    "RegionCatalog",
    "APIError",
    "BloomError",
    "StateConflictError",
    "RecordNotFoundError",
    "ServiceUnavailableError",
    "RateLimitError",
    "AuthenticationError"
]
