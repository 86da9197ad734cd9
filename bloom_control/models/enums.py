"""
Enumerations shared across the control plane.
"""

from enum import Enum


class ServerState(str, Enum):
    """Lifecycle state of the single managed instance."""
    OFFLINE = "OFFLINE"
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    IDLE = "IDLE"
    SYNCING = "SYNCING"
    TERMINATING = "TERMINATING"


class Region(str, Enum):
    """Deployment regions."""
    EU = "eu"
    US = "us"


class ShutdownReason(str, Enum):
    """Why a session was closed."""
    MANUAL = "manual"
    IDLE_TIMEOUT = "idle_timeout"
    TASK_COMPLETE = "task_complete"


class TaskStatus(str, Enum):
    """Task progression: pending -> running -> completed | failed."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class TaskMode(str, Enum):
    """Agent modes a task can be dispatched in."""
    ARCHITECT = "architect"
    CODE = "code"
    DEBUG = "debug"


# Persisted config keys (string-valued)
class ConfigKey(str, Enum):
    IDLE_TIMEOUT = "idle_timeout"
    DEFAULT_REGION = "default_region"
    AUTO_COMMIT = "auto_commit"
    MODEL_REASONING = "model_reasoning"
    MODEL_VISION = "model_vision"
    AUTO_SHUTDOWN_ON_COMPLETE = "auto_shutdown_on_complete"
