"""
Internal domain models persisted by the ledger.
"""

from typing import Optional
from pydantic import BaseModel, Field

from .enums import ServerState, Region, ShutdownReason, TaskStatus


class ServerStateRecord(BaseModel):
    """
    Singleton lifecycle record.

    `session_id` is set iff `state` is not OFFLINE; `instance_id` and
    `instance_address` are only set once the instance reported readiness.
    """
    state: ServerState = ServerState.OFFLINE
    session_id: Optional[str] = None
    instance_id: Optional[str] = None
    instance_address: Optional[str] = None
    region: Optional[Region] = None
    started_at: Optional[str] = None
    last_heartbeat: Optional[str] = None
    last_activity: Optional[str] = None
    idle_since: Optional[str] = None
    current_task: Optional[str] = None
    dns_updated_at: Optional[str] = None

    def is_active(self) -> bool:
        """True while a session is attached to the server."""
        return self.state != ServerState.OFFLINE

    def is_reachable(self) -> bool:
        """True when tasks can be sent to the instance."""
        return self.state in (ServerState.RUNNING, ServerState.IDLE) and bool(self.instance_address)


class SessionRecord(BaseModel):
    """One provision-to-teardown lifecycle of an instance."""
    session_id: str
    region: Region
    server_type: str
    started_at: str
    ended_at: Optional[str] = None
    duration_seconds: Optional[int] = None
    cost_usd: Optional[float] = None
    tasks_completed: int = 0
    shutdown_reason: Optional[ShutdownReason] = None
    # Provider-side handle, known as soon as provisioning returns
    instance_id: Optional[str] = None
    server_name: Optional[str] = None

    def is_open(self) -> bool:
        return self.ended_at is None


class TaskRecord(BaseModel):
    """A task dispatched to the instance within a session."""
    task_id: str
    session_id: str
    description: str
    mode: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    started_at: str
    completed_at: Optional[str] = None
    tokens_used: Optional[int] = None
    verification_token: Optional[str] = None
    output_trusted: Optional[bool] = None


class MonthlySummary(BaseModel):
    """Additive per-month rollup of closed sessions."""
    month: str
    total_hours: float = 0.0
    total_cost: float = 0.0
    session_count: int = 0
    tasks_completed: int = 0


class Repository(BaseModel):
    """A project repository synced onto the instance."""
    id: int
    name: str
    url: str
    branch: str = "main"
    path: str
    enabled: bool = True
    last_sync: Optional[str] = None
    created_at: str


class RegionSpec(BaseModel):
    """Provider placement and pricing for a region."""
    region: Region
    datacenter: str
    server_type: str
    hourly_rate: float = Field(..., ge=0)
