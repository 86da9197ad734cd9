"""
Security validation utilities for identifiers and addresses reported by
clients and by the remote instance.
"""

import html
import re

import validators


MAX_TASK_ID_LENGTH = 64
MAX_INSTANCE_ID_LENGTH = 64
MAX_ADDRESS_LENGTH = 253

# Safe patterns for IDs (alphanumeric, underscore, dash only)
SAFE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


class SecurityValidationError(ValueError):
    """Raised when security validation fails."""
    pass


def _validate_identifier(value: str, label: str, max_length: int) -> str:
    if not value:
        raise SecurityValidationError(f"{label} cannot be empty")

    if len(value) > max_length:
        raise SecurityValidationError(f"{label} too long (max {max_length} characters)")

    if not SAFE_ID_PATTERN.match(value):
        raise SecurityValidationError(f"{label} contains invalid characters (only alphanumeric, underscore, and dash allowed)")

    return value


def validate_task_id(task_id: str) -> str:
    """
    Validate task ID format.

    Raises:
        SecurityValidationError: If task ID is invalid
    """
    return _validate_identifier(task_id, "Task ID", MAX_TASK_ID_LENGTH)


def validate_instance_id(instance_id: str) -> str:
    """Validate the provider-assigned instance ID."""
    return _validate_identifier(str(instance_id).strip(), "Instance ID", MAX_INSTANCE_ID_LENGTH)


def validate_instance_address(address: str) -> str:
    """
    Validate an instance address (IPv4, IPv6 or hostname) using the validators library.

    Args:
        address: The address reported by the instance

    Returns:
        The stripped address

    Raises:
        SecurityValidationError: If the address is malformed
    """
    if not address:
        raise SecurityValidationError("Instance address cannot be empty")

    address = address.strip()
    if len(address) > MAX_ADDRESS_LENGTH:
        raise SecurityValidationError(f"Instance address too long (max {MAX_ADDRESS_LENGTH} characters)")

    if not (validators.ipv4(address) or validators.ipv6(address) or validators.domain(address)):
        raise SecurityValidationError("Instance address must be an IP address or hostname")

    return address


def sanitize_for_logging(text: str, max_length: int = 100) -> str:
    """
    Sanitize free text for safe logging (escape, flatten, truncate).

    Args:
        text: The text to sanitize
        max_length: Maximum length for logging

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ""

    sanitized = html.escape(text).replace('\n', ' ').replace('\r', ' ')

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."

    return sanitized
