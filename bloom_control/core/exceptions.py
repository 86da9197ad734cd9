"""
Custom exceptions for the control plane.

Domain errors are raised by services; `APIError` subclasses are what the
routes raise after translating them.
"""

from typing import List, Optional, Dict, Any
from fastapi import HTTPException, status


# Domain errors

class BloomError(Exception):
    """Base class for control plane errors."""


class StateConflictError(BloomError):
    """Command is not valid for the current lifecycle state, or the state changed underneath us."""


class AdmissionDeniedError(BloomError):
    """Request rejected before any side effect was attempted."""


class RateLimitExceededError(AdmissionDeniedError):
    """Rate limit window exhausted."""

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class CostLimitExceededError(AdmissionDeniedError):
    """Projected spend would exceed the daily ceiling."""

    def __init__(self, message: str, current_spend: float, limit: float):
        super().__init__(message)
        self.current_spend = current_spend
        self.limit = limit


class TaskRejectedError(AdmissionDeniedError):
    """Task input failed validation."""

    def __init__(self, issues: List[str]):
        super().__init__("; ".join(issues) or "Task rejected")
        self.issues = issues


class ProvisioningError(BloomError):
    """The provisioning collaborator failed; the ledger was rolled back."""


class InstanceUnavailableError(BloomError):
    """The remote instance could not be reached."""


class InvalidTaskTransitionError(BloomError):
    """Task status change would break pending -> running -> completed|failed."""


class RecordNotFoundError(BloomError):
    """Referenced session or task does not exist."""


class UnknownRegionError(BloomError):
    """Region is not in the catalog."""


# HTTP errors

class APIError(HTTPException):
    """Base API error class."""

    def __init__(
        self,
        status_code: int,
        detail: Any,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)


class ConflictError(APIError):
    """Raised when a command conflicts with the current lifecycle state."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "conflict", "message": message}
        )


class RateLimitError(APIError):
    """Raised when rate limit is exceeded."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[int] = None):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "rate_limited", "message": message, "retry_after": retry_after},
            headers={"Retry-After": str(retry_after)} if retry_after is not None else None
        )


class CostLimitError(APIError):
    """Raised when the daily cost ceiling would be exceeded."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "cost_limit", "message": message}
        )


class ValidationFailedError(APIError):
    """Raised when input is rejected by validation."""

    def __init__(self, issues: List[str]):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_input", "message": "Input rejected", "issues": issues}
        )


class AuthenticationError(APIError):
    """Raised when authentication fails."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=message,
            headers={"WWW-Authenticate": "Bearer"}
        )


class NotFoundError(APIError):
    """Raised when a referenced record does not exist."""

    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": message}
        )


class UpstreamError(APIError):
    """Raised when an external collaborator failed."""

    def __init__(self, service_name: str, message: str):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "upstream_failure", "service": service_name, "message": message}
        )


class ServiceUnavailableError(APIError):
    """Raised when a required service is unavailable."""

    def __init__(self, service_name: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{service_name} service is unavailable"
        )


def to_http_error(error: BloomError) -> HTTPException:
    """Translate a domain error into the HTTP error the routes raise."""
    if isinstance(error, (StateConflictError, InvalidTaskTransitionError)):
        return ConflictError(str(error))
    if isinstance(error, RateLimitExceededError):
        return RateLimitError(str(error), retry_after=error.retry_after)
    if isinstance(error, CostLimitExceededError):
        return CostLimitError(str(error))
    if isinstance(error, TaskRejectedError):
        return ValidationFailedError(error.issues)
    if isinstance(error, UnknownRegionError):
        return ValidationFailedError([str(error)])
    if isinstance(error, RecordNotFoundError):
        return NotFoundError(str(error))
    if isinstance(error, ProvisioningError):
        return UpstreamError("provisioner", str(error))
    if isinstance(error, InstanceUnavailableError):
        return UpstreamError("instance", str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")
