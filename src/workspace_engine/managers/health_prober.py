"""Health probing of workspace services.

A service counts as running only when its process is in the process table,
something listens on its port and that port answers HTTP with 2xx/3xx.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from workspace_engine.config import settings
from workspace_engine.errors import RemoteCommandError, SandboxNotFoundError
from workspace_engine.managers import scripts
from workspace_engine.models.health import (
    SandboxHealthReport,
    SandboxState,
    ServiceState,
    ServiceStatus,
    WorkspaceStatusResponse,
)
from workspace_engine.models.repository import SERVICE_LABELS, Repository, ServiceKind
from workspace_engine.providers.base import normalize_state
from workspace_engine.validation import validate_sandbox_id

if TYPE_CHECKING:
    from workspace_engine.providers.base import SandboxProvider
    from workspace_engine.storage.repository_store import RepositoryStore

logger = structlog.get_logger()


def classify_service(process_pid: int | None, probe: scripts.PortProbe) -> ServiceState:
    if process_pid is not None and probe.listening and scripts.is_http_ok(probe.http_status):
        return ServiceState.RUNNING
    if process_pid is not None:
        return ServiceState.ERROR
    return ServiceState.STOPPED


class HealthProber:
    """Builds SandboxHealthReports from the remote process table and ports."""

    def __init__(
        self,
        provider: SandboxProvider,
        store: RepositoryStore,
        command_timeout: int | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._timeout = command_timeout or settings.check_command_timeout

    async def _load_repositories(self, sandbox_id: str) -> list[Repository]:
        repositories = await self._store.get_repositories(sandbox_id)
        if repositories is None:
            raise SandboxNotFoundError(
                sandbox_id, f"No repositories registered for workspace {sandbox_id}"
            )
        return repositories

    @staticmethod
    def _status(
        repository: Repository,
        kind: ServiceKind,
        state: ServiceState,
        **fields: Any,
    ) -> ServiceStatus:
        return ServiceStatus(
            name=f"{SERVICE_LABELS[kind]} ({repository.name})",
            kind=kind,
            repository_id=repository.id,
            repository_name=repository.name,
            port=repository.ports.for_kind(kind),
            state=state,
            **fields,
        )

    def _all_stopped(
        self, repositories: list[Repository], error: str | None = None
    ) -> list[ServiceStatus]:
        return [
            self._status(repository, kind, ServiceState.STOPPED, error=error)
            for repository in repositories
            for kind in ServiceKind
        ]

    async def probe(self, sandbox_id: str) -> SandboxHealthReport:
        """Take a health snapshot of every service in a sandbox.

        Raises:
            ValidationError: If the sandbox ID is malformed
            SandboxNotFoundError: If the sandbox or its repository record is unknown
        """
        validate_sandbox_id(sandbox_id)
        repositories = await self._load_repositories(sandbox_id)

        try:
            raw_state = await self._provider.get_state(sandbox_id)
        except RemoteCommandError as e:
            logger.warning("Could not read sandbox state", sandbox_id=sandbox_id, error=str(e))
            return SandboxHealthReport(
                sandbox_id=sandbox_id,
                sandbox_state=SandboxState.ERROR,
                services=self._all_stopped(repositories),
                error=str(e),
            )

        sandbox_state = normalize_state(raw_state)
        if sandbox_state != SandboxState.STARTED:
            # Nothing can run in a session that is not up
            return SandboxHealthReport(
                sandbox_id=sandbox_id,
                sandbox_state=sandbox_state,
                services=self._all_stopped(repositories),
                error=f"Container is {raw_state}",
            )

        report_error = None
        try:
            result = await self._provider.execute_command(
                sandbox_id, scripts.PROCESS_SNAPSHOT_COMMAND, timeout=self._timeout
            )
            snapshot = scripts.parse_process_snapshot(result.stdout)
        except Exception as e:
            logger.warning("Process snapshot failed", sandbox_id=sandbox_id, error=str(e))
            snapshot = []
            report_error = f"Process snapshot failed: {e}"

        services = [
            await self._probe_service(sandbox_id, repository, kind, snapshot)
            for repository in repositories
            for kind in ServiceKind
        ]

        report = SandboxHealthReport(
            sandbox_id=sandbox_id,
            sandbox_state=sandbox_state,
            services=services,
            process_snapshot=snapshot,
            error=report_error,
        )
        logger.debug(
            "Health probe finished",
            sandbox_id=sandbox_id,
            running=report.running_count,
            total=len(services),
        )
        return report

    async def _probe_service(
        self,
        sandbox_id: str,
        repository: Repository,
        kind: ServiceKind,
        snapshot: list[str],
    ) -> ServiceStatus:
        port = repository.ports.for_kind(kind)
        pid = scripts.process_for_port(snapshot, port)

        try:
            result = await self._provider.execute_command(
                sandbox_id, scripts.port_probe_command(port), timeout=self._timeout
            )
            probe = scripts.parse_port_probe(result.stdout)
        except Exception as e:
            state = ServiceState.ERROR if pid is not None else ServiceState.STOPPED
            return self._status(repository, kind, state, pid=pid, error=f"Probe failed: {e}")

        state = classify_service(pid, probe)
        if state == ServiceState.RUNNING:
            return self._status(
                repository, kind, state, pid=pid, url=repository.service_urls.get(kind.value)
            )

        error = None
        if state == ServiceState.ERROR:
            if not probe.listening:
                error = f"Process running but port {port} is not listening"
            else:
                error = f"HTTP probe returned {probe.http_status or 'no response'}"
        return self._status(repository, kind, state, pid=pid, error=error)

    async def workspace_status(self, sandbox_id: str) -> WorkspaceStatusResponse:
        """Summarize whether a sandbox needs its services restarted.

        Raises:
            ValidationError: If the sandbox ID is malformed
            SandboxNotFoundError: If the sandbox is unknown
        """
        validate_sandbox_id(sandbox_id)
        try:
            raw_state = await self._provider.get_state(sandbox_id)
            if normalize_state(raw_state) != SandboxState.STARTED:
                return WorkspaceStatusResponse(
                    status=raw_state,
                    services_healthy=False,
                    message=f"Container is {raw_state}",
                )

            report = await self.probe(sandbox_id)
        except SandboxNotFoundError:
            raise
        except Exception as e:
            logger.warning("Workspace status check failed", sandbox_id=sandbox_id, error=str(e))
            return WorkspaceStatusResponse(status="error", services_healthy=False, message=str(e))

        healthy = report.is_healthy
        return WorkspaceStatusResponse(
            status=raw_state,
            services_healthy=healthy,
            message="All services running" if healthy else "Services need restart",
        )
