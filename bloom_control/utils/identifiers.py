"""
Identifier generation utilities.
"""

import secrets
import uuid
from datetime import datetime


def generate_session_id(now: datetime) -> str:
    """
    Generate a human-sortable session ID.

    Date-prefixed so lexical order follows creation order, with a random
    suffix to stay unique within the same second.

    Example: 20250131-142501-a3f9c2
    """
    return f"{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"


def generate_task_id() -> str:
    """Generate a unique task ID."""
    return f"task-{uuid.uuid4().hex[:16]}"


def generate_verification_token() -> str:
    """Random hex fragment used inside canary markers."""
    return uuid.uuid4().hex[:16]
