"""Results of service lifecycle operations."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import Field

from workspace_engine.models.base import CamelModel
from workspace_engine.models.repository import Repository, ServiceKind


class CleanupOutcome(str, Enum):
    """Best-effort result of killing whatever listened on a port."""

    KILLED = "killed"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class LaunchStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class RepositoryStatus(str, Enum):
    """Per-repository outcome of a restart.

    SKIPPED means the working directory is absent on the sandbox; FAILED means
    the repository could not even be inspected.
    """

    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class JobHandle(CamelModel):
    """Correlation token for a detached daemon launch.

    The handle says nothing about liveness; the health prober re-derives it.
    """

    token: str
    kind: ServiceKind
    port: int
    log_path: str
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PortCleanup(CamelModel):
    port: int
    outcome: CleanupOutcome


class ServiceLaunchResult(CamelModel):
    """Outcome of launching and verifying one daemon."""

    kind: ServiceKind
    name: str
    port: int
    status: LaunchStatus
    url: str | None = None
    token: str | None = None
    http_status: int | None = None
    error: str | None = None
    job: JobHandle | None = None


class RepositoryServiceResult(CamelModel):
    repository_id: str
    repository_name: str
    status: RepositoryStatus
    services: list[ServiceLaunchResult] = Field(default_factory=list)
    cleanup: list[PortCleanup] = Field(default_factory=list)
    message: str | None = None

    @property
    def successful(self) -> int:
        return sum(1 for s in self.services if s.status == LaunchStatus.SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for s in self.services if s.status == LaunchStatus.FAILED)


class RestartSummary(CamelModel):
    repositories: int = 0
    total_services: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0


class ServiceRestartResult(CamelModel):
    """Result of restart_services_complete for one sandbox."""

    sandbox_id: str
    success: bool
    message: str
    summary: RestartSummary
    per_repository: list[RepositoryServiceResult] = Field(default_factory=list)


class RepositoryCreateResponse(CamelModel):
    repository: Repository
    restart: ServiceRestartResult | None = None
