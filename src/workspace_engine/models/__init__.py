"""Workspace engine data models."""

from workspace_engine.models.base import CamelModel
from workspace_engine.models.health import (
    DebugServicesResponse,
    HealthPhase,
    HealthStateResponse,
    HealthSummary,
    SandboxHealthReport,
    SandboxState,
    ServiceState,
    ServiceStatus,
    WorkspaceActionResponse,
    WorkspaceStatusResponse,
)
from workspace_engine.models.repository import (
    SERVICE_LABELS,
    PortTriple,
    Repository,
    RepositoryCreateRequest,
    ServiceKind,
    SourceType,
    WorkspaceUrlsResponse,
)
from workspace_engine.models.services import (
    CleanupOutcome,
    JobHandle,
    LaunchStatus,
    PortCleanup,
    RepositoryCreateResponse,
    RepositoryServiceResult,
    RepositoryStatus,
    RestartSummary,
    ServiceLaunchResult,
    ServiceRestartResult,
)
from workspace_engine.models.terminal import (
    TerminalCommandRequest,
    TerminalCommandResponse,
    TerminalInputType,
    TerminalTarget,
)

__all__ = [
    "SERVICE_LABELS",
    "CamelModel",
    "CleanupOutcome",
    "DebugServicesResponse",
    "HealthPhase",
    "HealthStateResponse",
    "HealthSummary",
    "JobHandle",
    "LaunchStatus",
    "PortCleanup",
    "PortTriple",
    "Repository",
    "RepositoryCreateRequest",
    "RepositoryCreateResponse",
    "RepositoryServiceResult",
    "RepositoryStatus",
    "RestartSummary",
    "SandboxHealthReport",
    "SandboxState",
    "ServiceKind",
    "ServiceLaunchResult",
    "ServiceRestartResult",
    "ServiceState",
    "ServiceStatus",
    "SourceType",
    "TerminalCommandRequest",
    "TerminalCommandResponse",
    "TerminalInputType",
    "TerminalTarget",
    "WorkspaceActionResponse",
    "WorkspaceStatusResponse",
    "WorkspaceUrlsResponse",
]
