"""
Response models for API endpoints.
"""

from typing import List, Optional, Dict
from pydantic import BaseModel, Field

from .enums import ServerState, Region, ShutdownReason
from .internal import Repository


class StartResponse(BaseModel):
    """Response for a successful start command."""
    status: str = "provisioning"
    session_id: str
    region: Region
    instance_id: Optional[str] = None
    server_name: Optional[str] = None
    estimated_ready_time: str = Field(..., description="Best-effort estimate for display only")


class StopResponse(BaseModel):
    """Response for a stop command."""
    status: str = "terminated"
    message: str
    duration_seconds: int
    cost_usd: float


class CostInfo(BaseModel):
    current_session: Optional[float] = None
    hourly_rate: Optional[float] = None
    this_month: float = 0.0


class StatusResponse(BaseModel):
    """Current lifecycle snapshot plus live projections."""
    state: ServerState
    session_id: Optional[str] = None
    region: Optional[Region] = None
    instance_id: Optional[str] = None
    instance_address: Optional[str] = None
    uptime: Optional[int] = None
    idle_time: Optional[int] = None
    idle_timeout: Optional[int] = None
    terminal_url: Optional[str] = None
    last_activity: Optional[str] = None
    last_heartbeat: Optional[str] = None
    current_task: Optional[str] = None
    costs: CostInfo = Field(default_factory=CostInfo)


class TaskResponse(BaseModel):
    """Response for a dispatched task."""
    task_id: str
    status: str
    message: str
    warnings: List[str] = Field(default_factory=list)


class ProjectsResponse(BaseModel):
    projects: List[Repository]


class SyncResponse(BaseModel):
    status: str
    message: str


class SessionSummary(BaseModel):
    """Session row as shown in history."""
    session_id: str
    started_at: str
    ended_at: Optional[str] = None
    duration: Optional[int] = None
    duration_formatted: str
    region: Region
    cost_usd: Optional[float] = None
    tasks_completed: int = 0
    shutdown_reason: Optional[ShutdownReason] = None


class MonthInfo(BaseModel):
    total_hours: float = 0.0
    total_cost: float = 0.0
    session_count: int = 0


class HistoryResponse(BaseModel):
    sessions: List[SessionSummary]
    this_month: MonthInfo


class ConfigResponse(BaseModel):
    config: Dict[str, str]


class WebhookAck(BaseModel):
    """Acknowledgement returned to the instance."""
    status: str = "ok"
    state: ServerState
    message: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime: float
    redis: bool = False


class ErrorResponse(BaseModel):
    error: str
    message: str
    retry_after: Optional[int] = None
