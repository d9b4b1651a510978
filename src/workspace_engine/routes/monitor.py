"""Health monitor routes.

Observing a sandbox starts a polling task on the server; the UI reads the
resulting state instead of probing the sandbox itself.
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status

from workspace_engine.deps import get_monitors, to_http_exception, verify_internal_auth
from workspace_engine.managers.health_monitor import HealthMonitor, HealthMonitorRegistry
from workspace_engine.models.health import HealthStateResponse
from workspace_engine.validation import ValidationError, validate_sandbox_id

router = APIRouter(
    prefix="/workspace-health",
    tags=["workspace-health"],
    dependencies=[Depends(verify_internal_auth)],
)


def _validated(sandbox_id: str) -> str:
    try:
        return validate_sandbox_id(sandbox_id)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


def _observed(monitors: HealthMonitorRegistry, sandbox_id: str) -> HealthMonitor:
    monitor = monitors.get(_validated(sandbox_id))
    if monitor is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Workspace {sandbox_id} is not being observed",
        )
    return monitor


@router.post("/{sandbox_id}", response_model=HealthStateResponse)
async def observe_workspace(
    sandbox_id: str,
    monitors: Annotated[HealthMonitorRegistry, Depends(get_monitors)],
) -> HealthStateResponse:
    """Start observing a sandbox. Idempotent."""
    monitor = monitors.observe(_validated(sandbox_id))
    return monitor.snapshot()


@router.get("/{sandbox_id}", response_model=HealthStateResponse)
async def get_workspace_health(
    sandbox_id: str,
    monitors: Annotated[HealthMonitorRegistry, Depends(get_monitors)],
) -> HealthStateResponse:
    """Current health state of an observed sandbox."""
    return _observed(monitors, sandbox_id).snapshot()


@router.post("/{sandbox_id}/check", response_model=HealthStateResponse)
async def check_workspace_health(
    sandbox_id: str,
    monitors: Annotated[HealthMonitorRegistry, Depends(get_monitors)],
) -> HealthStateResponse:
    """Probe an observed sandbox now."""
    monitor = _observed(monitors, sandbox_id)
    await monitor.check()
    return monitor.snapshot()


@router.post("/{sandbox_id}/restart")
async def restart_workspace_services(
    sandbox_id: str,
    monitors: Annotated[HealthMonitorRegistry, Depends(get_monitors)],
) -> dict[str, Any]:
    """Restart services, observing the sandbox first if needed."""
    monitor = monitors.observe(_validated(sandbox_id))
    try:
        result = await monitor.restart()
    except Exception as e:
        raise to_http_exception(e, sandbox_id) from e
    return {
        "health": monitor.snapshot().model_dump(mode="json", by_alias=True),
        "restart": result.model_dump(mode="json", by_alias=True),
    }


@router.delete("/{sandbox_id}", status_code=status.HTTP_204_NO_CONTENT)
async def stop_observing_workspace(
    sandbox_id: str,
    monitors: Annotated[HealthMonitorRegistry, Depends(get_monitors)],
) -> None:
    """Stop observing a sandbox and cancel its polling task."""
    if not await monitors.release(_validated(sandbox_id)):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Workspace {sandbox_id} is not being observed",
        )
