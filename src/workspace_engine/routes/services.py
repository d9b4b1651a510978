"""Workspace service control routes.

Every route that (re)starts services goes through
ServiceLifecycleManager.restart_services_complete.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends

from workspace_engine.deps import (
    get_lifecycle_manager,
    get_monitors,
    get_prober,
    get_provider,
    get_repository_store,
    to_http_exception,
    verify_internal_auth,
)
from workspace_engine.errors import SandboxNotFoundError
from workspace_engine.managers.health_monitor import HealthMonitorRegistry
from workspace_engine.managers.health_prober import HealthProber
from workspace_engine.managers.service_manager import ServiceLifecycleManager
from workspace_engine.models.health import (
    DebugServicesResponse,
    HealthSummary,
    SandboxState,
    WorkspaceActionResponse,
    WorkspaceStatusResponse,
)
from workspace_engine.models.repository import WorkspaceUrlsResponse
from workspace_engine.models.services import ServiceRestartResult
from workspace_engine.providers.base import SandboxProvider, normalize_state
from workspace_engine.storage.repository_store import RepositoryStore
from workspace_engine.validation import validate_sandbox_id

logger = structlog.get_logger()

router = APIRouter(tags=["services"], dependencies=[Depends(verify_internal_auth)])


async def _restart(
    sandbox_id: str,
    lifecycle: ServiceLifecycleManager,
    monitors: HealthMonitorRegistry,
) -> ServiceRestartResult:
    # An observed sandbox restarts through its monitor so errors are suppressed
    monitor = monitors.get(sandbox_id)
    try:
        if monitor is not None:
            return await monitor.restart()
        return await lifecycle.restart_services_complete(sandbox_id)
    except Exception as e:
        raise to_http_exception(e, sandbox_id) from e


@router.post("/fix-services/{sandbox_id}", response_model=ServiceRestartResult)
async def fix_services(
    sandbox_id: str,
    lifecycle: Annotated[ServiceLifecycleManager, Depends(get_lifecycle_manager)],
    monitors: Annotated[HealthMonitorRegistry, Depends(get_monitors)],
) -> ServiceRestartResult:
    """Kill, relaunch and verify every service of a sandbox."""
    return await _restart(sandbox_id, lifecycle, monitors)


@router.post("/workspace-start/{sandbox_id}", response_model=ServiceRestartResult)
async def start_workspace(
    sandbox_id: str,
    lifecycle: Annotated[ServiceLifecycleManager, Depends(get_lifecycle_manager)],
    monitors: Annotated[HealthMonitorRegistry, Depends(get_monitors)],
) -> ServiceRestartResult:
    """Wake a sandbox and start its services."""
    return await _restart(sandbox_id, lifecycle, monitors)


@router.post("/workspace-stop/{sandbox_id}", response_model=WorkspaceActionResponse)
async def stop_workspace(
    sandbox_id: str,
    provider: Annotated[SandboxProvider, Depends(get_provider)],
) -> WorkspaceActionResponse:
    """Stop a sandbox. A sandbox that is not running is left alone."""
    try:
        validate_sandbox_id(sandbox_id)
        raw_state = await provider.get_state(sandbox_id)
        if normalize_state(raw_state) != SandboxState.STARTED:
            return WorkspaceActionResponse(
                success=True, status=raw_state, message=f"Workspace already {raw_state}"
            )
        await provider.stop(sandbox_id)
    except Exception as e:
        raise to_http_exception(e, sandbox_id) from e

    logger.info("Workspace stopped", sandbox_id=sandbox_id)
    return WorkspaceActionResponse(success=True, status="stopped", message="Workspace stopped")


@router.get("/workspace-status/{sandbox_id}", response_model=WorkspaceStatusResponse)
async def workspace_status(
    sandbox_id: str,
    prober: Annotated[HealthProber, Depends(get_prober)],
) -> WorkspaceStatusResponse:
    """Report whether a sandbox's services need a restart."""
    try:
        return await prober.workspace_status(sandbox_id)
    except Exception as e:
        raise to_http_exception(e, sandbox_id) from e


@router.get("/debug-services/{sandbox_id}", response_model=DebugServicesResponse)
async def debug_services(
    sandbox_id: str,
    prober: Annotated[HealthProber, Depends(get_prober)],
    store: Annotated[RepositoryStore, Depends(get_repository_store)],
) -> DebugServicesResponse:
    """Full health report with the process snapshot, for troubleshooting."""
    try:
        report = await prober.probe(sandbox_id)
        repositories = await store.get_repositories(sandbox_id) or []
    except Exception as e:
        raise to_http_exception(e, sandbox_id) from e

    return DebugServicesResponse(
        **report.model_dump(),
        summary=HealthSummary(
            running=report.running_count,
            total=len(report.services),
            healthy=report.is_healthy,
        ),
        repositories=repositories,
    )


@router.get("/workspace-urls/{sandbox_id}", response_model=WorkspaceUrlsResponse)
async def workspace_urls(
    sandbox_id: str,
    store: Annotated[RepositoryStore, Depends(get_repository_store)],
) -> WorkspaceUrlsResponse:
    """Preview links stored by the last successful restart."""
    try:
        validate_sandbox_id(sandbox_id)
        repositories = await store.get_repositories(sandbox_id)
        if repositories is None:
            raise SandboxNotFoundError(sandbox_id)
    except Exception as e:
        raise to_http_exception(e, sandbox_id) from e

    first = repositories[0] if repositories else None
    return WorkspaceUrlsResponse(
        sandbox_id=sandbox_id,
        repositories=repositories,
        service_urls=dict(first.service_urls) if first else {},
        tokens=dict(first.tokens) if first else {},
    )
