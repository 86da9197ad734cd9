"""
Request models for API endpoints and instance webhooks.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import Region, TaskMode, TaskStatus
from ..utils.security import (
    SecurityValidationError,
    validate_task_id,
    validate_instance_id,
    validate_instance_address
)


class _Request(BaseModel):
    """Accepts both snake_case and the camelCase names the dashboard/instance send."""
    model_config = ConfigDict(populate_by_name=True)


class StartRequest(_Request):
    """Request to provision the instance."""
    region: Optional[Region] = Field(default=None, description="Region to provision in (defaults to configured region)")
    task: Optional[str] = Field(default=None, description="Optional task to run once the instance is ready")
    auto_shutdown: bool = Field(default=True, alias="autoShutdown")


class StopRequest(_Request):
    """Request to tear the instance down."""
    force: bool = Field(default=False, description="Skip the remote sync")
    commit_pending: bool = Field(default=True, alias="commitPending")


class TaskRequest(_Request):
    """Request to dispatch a task to the running agent."""
    task: str = Field(..., description="Free-text task description")
    mode: Optional[TaskMode] = None
    auto_shutdown_on_complete: bool = Field(default=False, alias="autoShutdownOnComplete")


class ModelSelection(_Request):
    reasoning: Optional[str] = Field(default=None, max_length=200)
    vision: Optional[str] = Field(default=None, max_length=200)


class ConfigUpdateRequest(_Request):
    """Partial config update; omitted fields are left untouched."""
    idle_timeout: Optional[int] = Field(default=None, alias="idleTimeout", ge=60, le=86400)
    default_region: Optional[Region] = Field(default=None, alias="defaultRegion")
    auto_commit: Optional[bool] = Field(default=None, alias="autoCommit")
    auto_shutdown_on_complete: Optional[bool] = Field(default=None, alias="autoShutdownOnComplete")
    models: Optional[ModelSelection] = None


class RepositoryRequest(_Request):
    """Register a project repository."""
    name: str = Field(..., min_length=1, max_length=100)
    url: str = Field(..., min_length=1, max_length=500)
    branch: str = Field(default="main", max_length=100)
    path: str = Field(..., min_length=1, max_length=300)


class RepositoryUpdateRequest(_Request):
    enabled: Optional[bool] = None


class ReadyWebhook(_Request):
    """Instance finished booting."""
    instance_id: str = Field(..., alias="serverId")
    address: str = Field(..., alias="ip")

    @field_validator('instance_id', mode='before')
    @classmethod
    def validate_instance_id_format(cls, v):
        try:
            return validate_instance_id(str(v))
        except SecurityValidationError as e:
            raise ValueError(str(e))

    @field_validator('address')
    @classmethod
    def validate_address_format(cls, v):
        try:
            return validate_instance_address(v)
        except SecurityValidationError as e:
            raise ValueError(str(e))


class HeartbeatWebhook(_Request):
    """Periodic liveness report from the instance."""
    state: Optional[str] = Field(default=None, max_length=32, description="State as seen by the instance")
    idle_seconds: int = Field(..., alias="idleSeconds", ge=0)
    timestamp: Optional[str] = None


class TaskCompleteWebhook(_Request):
    """Agent finished (or failed) a task."""
    status: TaskStatus
    task_id: Optional[str] = Field(default=None, alias="taskId")
    trigger_shutdown: bool = Field(default=False, alias="triggerShutdown")
    output: Optional[str] = Field(default=None, description="Agent output, checked for leaked verification markers")
    tokens_used: Optional[int] = Field(default=None, alias="tokensUsed", ge=0)
    timestamp: Optional[str] = None

    @field_validator('status')
    @classmethod
    def validate_terminal_status(cls, v):
        if not v.is_terminal():
            raise ValueError("status must be 'completed' or 'failed'")
        return v

    @field_validator('task_id')
    @classmethod
    def validate_task_id_format(cls, v):
        if v is None:
            return v
        try:
            return validate_task_id(v)
        except SecurityValidationError as e:
            raise ValueError(str(e))


class IdleTimeoutWebhook(_Request):
    """Instance reports its own idle timeout elapsed."""
    timestamp: Optional[str] = None
