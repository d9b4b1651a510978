"""Health snapshots and the health monitor's observable state."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import Field

from workspace_engine.models.base import CamelModel
from workspace_engine.models.repository import Repository, ServiceKind


class ServiceState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class SandboxState(str, Enum):
    """Compute session lifecycle state, as seen by the health prober."""

    STARTED = "started"
    STOPPED = "stopped"
    ERROR = "error"


class HealthPhase(str, Enum):
    """Health state machine phases.

    This is a state machine enum - only the transition function moves
    between them.
    """

    UNKNOWN = "unknown"
    CHECKING = "checking"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    STOPPED = "stopped"
    RESTARTING = "restarting"


class ServiceStatus(CamelModel):
    """Point-in-time status of one service. Never persisted."""

    name: str
    kind: ServiceKind
    repository_id: str
    repository_name: str
    port: int
    state: ServiceState
    pid: int | None = None
    url: str | None = None
    error: str | None = None


class SandboxHealthReport(CamelModel):
    """One health check of a sandbox. Consumed and discarded."""

    sandbox_id: str
    sandbox_state: SandboxState
    services: list[ServiceStatus] = Field(default_factory=list)
    process_snapshot: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None

    @property
    def running_count(self) -> int:
        return sum(1 for s in self.services if s.state == ServiceState.RUNNING)

    @property
    def all_running(self) -> bool:
        return all(s.state == ServiceState.RUNNING for s in self.services)

    @property
    def is_healthy(self) -> bool:
        return self.sandbox_state == SandboxState.STARTED and self.all_running


class HealthSummary(CamelModel):
    running: int
    total: int
    healthy: bool


class DebugServicesResponse(SandboxHealthReport):
    summary: HealthSummary
    repositories: list[Repository] = Field(default_factory=list)


class WorkspaceStatusResponse(CamelModel):
    status: str
    services_healthy: bool
    message: str


class HealthStateResponse(CamelModel):
    """Observable view of a sandbox's health state."""

    sandbox_id: str
    phase: HealthPhase
    last_report: SandboxHealthReport | None = None
    restart_started_at: datetime | None = None
    last_checked_at: datetime | None = None
    error: str | None = None
    poll_interval: float


class WorkspaceActionResponse(CamelModel):
    success: bool
    status: str
    message: str
