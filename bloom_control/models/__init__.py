"""
Data models for the control plane.
"""

from .enums import (
    ServerState,
    Region,
    ShutdownReason,
    TaskStatus,
    TaskMode,
    ConfigKey
)

from .internal import (
    ServerStateRecord,
    SessionRecord,
    TaskRecord,
    MonthlySummary,
    Repository,
    RegionSpec
)

__all__ = [
    # Enums
    "ServerState",
    "Region",
    "ShutdownReason",
    "TaskStatus",
    "TaskMode",
    "ConfigKey",

    # Internal models
    "ServerStateRecord",
    "SessionRecord",
    "TaskRecord",
    "MonthlySummary",
    "Repository",
    "RegionSpec"
]
