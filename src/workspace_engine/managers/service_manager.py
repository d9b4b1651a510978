"""Service lifecycle management for workspace sandboxes.

restart_services_complete is the only operation that starts or kills
daemons. Manual fixes, post-provisioning auto-start and health-driven
recovery all go through it, so running it twice in a row is safe: every
pass kills before it launches and re-verifies what it launched.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from workspace_engine import metrics
from workspace_engine.config import settings
from workspace_engine.errors import (
    RemoteCommandError,
    SandboxNotFoundError,
    SandboxUnavailableError,
)
from workspace_engine.managers import scripts
from workspace_engine.models.health import SandboxState
from workspace_engine.models.repository import SERVICE_LABELS, Repository, ServiceKind
from workspace_engine.models.services import (
    CleanupOutcome,
    JobHandle,
    LaunchStatus,
    PortCleanup,
    RepositoryServiceResult,
    RepositoryStatus,
    RestartSummary,
    ServiceLaunchResult,
    ServiceRestartResult,
)
from workspace_engine.providers.base import TRANSITIONAL_STATES, normalize_state
from workspace_engine.validation import validate_sandbox_id

if TYPE_CHECKING:
    from workspace_engine.providers.base import SandboxProvider
    from workspace_engine.storage.repository_store import RepositoryStore

logger = structlog.get_logger()


@dataclass
class LifecycleConfig:
    """Timing policy for service restarts. Values are empirical, not contract."""

    short_command_timeout: int = 5  # kill, launch, readiness echo
    check_command_timeout: int = 10  # directory checks and HTTP probes
    sandbox_ready_timeout: float = 10.0  # Max wait for a cold sandbox to answer
    ready_poll_interval: float = 1.0
    kill_settle_seconds: float = 3.0  # Let killed daemons release their sockets
    launch_settle_seconds: float = 2.0  # Between launching a daemon and probing it
    projects_dir: str = "projects"
    service_log_dir: str = "/tmp"
    agent_command: str = "claude"

    @classmethod
    def from_settings(cls) -> LifecycleConfig:
        return cls(
            short_command_timeout=settings.short_command_timeout,
            check_command_timeout=settings.check_command_timeout,
            sandbox_ready_timeout=settings.sandbox_ready_timeout,
            kill_settle_seconds=settings.kill_settle_seconds,
            launch_settle_seconds=settings.launch_settle_seconds,
            projects_dir=settings.projects_dir,
            service_log_dir=settings.service_log_dir,
            agent_command=settings.agent_command,
        )


def repository_dir(root_dir: str, projects_dir: str, repo_name: str) -> str:
    if projects_dir.startswith("/"):
        return f"{projects_dir.rstrip('/')}/{repo_name}"
    return f"{root_dir.rstrip('/')}/{projects_dir.strip('/')}/{repo_name}"


class ServiceLifecycleManager:
    """Kills, launches and verifies the per-repository daemons of a sandbox."""

    def __init__(
        self,
        provider: SandboxProvider,
        store: RepositoryStore,
        config: LifecycleConfig | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._config = config or LifecycleConfig.from_settings()

    @property
    def config(self) -> LifecycleConfig:
        return self._config

    async def ensure_sandbox_running(self, sandbox_id: str) -> None:
        """Start a suspended sandbox and wait until its shell answers.

        Raises:
            SandboxNotFoundError: If the provider does not know the sandbox
            SandboxUnavailableError: If the shell does not answer in time
        """
        raw_state = await self._provider.get_state(sandbox_id)
        if normalize_state(raw_state) == SandboxState.STARTED:
            return

        if raw_state.lower() not in TRANSITIONAL_STATES:
            logger.info("Starting sandbox before restart", sandbox_id=sandbox_id, state=raw_state)
            await self._provider.start(sandbox_id, timeout=self._config.sandbox_ready_timeout)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.sandbox_ready_timeout
        last_error: str | None = None
        while True:
            try:
                result = await self._provider.execute_command(
                    sandbox_id,
                    scripts.READY_COMMAND,
                    timeout=self._config.short_command_timeout,
                )
                if scripts.READY_MARKER in result.stdout:
                    logger.info("Sandbox is reachable", sandbox_id=sandbox_id)
                    return
            except RemoteCommandError as e:
                last_error = str(e)

            if loop.time() >= deadline:
                break
            await asyncio.sleep(self._config.ready_poll_interval)

        raise SandboxUnavailableError(
            f"Sandbox {sandbox_id} did not become reachable within "
            f"{self._config.sandbox_ready_timeout:g}s"
            + (f": {last_error}" if last_error else "")
        )

    async def cleanup_ports(self, sandbox_id: str, ports: list[int]) -> dict[int, CleanupOutcome]:
        """Best-effort kill of anything listening on the given ports.

        Never raises; a failed kill command yields UNKNOWN for every port.
        """
        try:
            result = await self._provider.execute_command(
                sandbox_id,
                scripts.cleanup_command(ports),
                timeout=self._config.short_command_timeout,
            )
        except Exception as e:
            logger.warning(
                "Port cleanup failed, continuing",
                sandbox_id=sandbox_id,
                ports=ports,
                error=str(e),
            )
            return dict.fromkeys(ports, CleanupOutcome.UNKNOWN)

        outcomes = scripts.parse_cleanup_output(result.stdout, ports)
        logger.debug(
            "Port cleanup finished",
            sandbox_id=sandbox_id,
            outcomes={port: outcome.value for port, outcome in outcomes.items()},
        )
        return outcomes

    async def directory_exists(self, sandbox_id: str, path: str) -> bool:
        result = await self._provider.execute_command(
            sandbox_id,
            scripts.directory_check_command(path),
            timeout=self._config.check_command_timeout,
        )
        return scripts.parse_directory_check(result.stdout)

    async def submit_daemon(
        self,
        sandbox_id: str,
        repository: Repository,
        kind: ServiceKind,
        repo_dir: str,
    ) -> JobHandle:
        """Launch one daemon detached from the remote shell.

        Returns a job handle as soon as the submission is acknowledged; the
        daemon may still fail to come up.
        """
        port = repository.ports.for_kind(kind)
        log_dir = self._config.service_log_dir.rstrip("/")
        log_path = f"{log_dir}/{kind.value}-{repository.name}.log"

        if kind == ServiceKind.EDITOR:
            daemon = scripts.editor_daemon_command(port, repo_dir)
        else:
            script_path = f"{log_dir}/{kind.value}-{repository.name}.sh"
            session = scripts.tmux_session_name(kind, repository.name)
            command = self._config.agent_command if kind == ServiceKind.AGENT else None
            written = await self._provider.execute_command(
                sandbox_id,
                scripts.write_script_command(
                    script_path, scripts.tmux_start_script(session, repo_dir, command)
                ),
                timeout=self._config.short_command_timeout,
            )
            if not written.ok:
                raise RemoteCommandError(
                    f"Could not write start script {script_path}: {written.stdout.strip()}"
                )
            daemon = scripts.terminal_daemon_command(port, script_path)

        token = uuid.uuid4().hex[:12]
        result = await self._provider.execute_command(
            sandbox_id,
            scripts.launch_command(daemon, repo_dir, log_path, token),
            timeout=self._config.short_command_timeout,
        )
        if not result.ok or token not in result.stdout:
            raise RemoteCommandError(
                f"Launch of {kind.value} on port {port} was not acknowledged "
                f"(exit {result.exit_code}): {result.stdout.strip()[:200]}"
            )
        return JobHandle(token=token, kind=kind, port=port, log_path=log_path)

    async def probe_http(self, sandbox_id: str, port: int) -> int | None:
        result = await self._provider.execute_command(
            sandbox_id,
            scripts.http_probe_command(port),
            timeout=self._config.check_command_timeout,
        )
        return scripts.parse_http_status(result.stdout)

    async def launch_service(
        self,
        sandbox_id: str,
        repository: Repository,
        kind: ServiceKind,
        repo_dir: str,
    ) -> ServiceLaunchResult:
        """Launch one daemon and verify it answers HTTP on its port."""
        port = repository.ports.for_kind(kind)
        name = f"{SERVICE_LABELS[kind]} ({repository.name})"

        job = await self.submit_daemon(sandbox_id, repository, kind, repo_dir)
        await asyncio.sleep(self._config.launch_settle_seconds)
        http_status = await self.probe_http(sandbox_id, port)

        if not scripts.is_http_ok(http_status):
            logger.warning(
                "Service did not answer after launch",
                sandbox_id=sandbox_id,
                repository=repository.name,
                service=kind.value,
                port=port,
                http_status=http_status,
            )
            return ServiceLaunchResult(
                kind=kind,
                name=name,
                port=port,
                status=LaunchStatus.FAILED,
                http_status=http_status,
                error=f"HTTP probe returned {http_status or 'no response'}",
                job=job,
            )

        url = None
        token = None
        error = None
        try:
            link = await self._provider.get_preview_link(sandbox_id, port)
            url, token = link.url, link.token
        except Exception as e:
            # The daemon is up; a missing link only affects how it is reached
            error = f"Preview link unavailable: {e}"
            logger.warning(
                "Preview link lookup failed",
                sandbox_id=sandbox_id,
                port=port,
                error=str(e),
            )

        return ServiceLaunchResult(
            kind=kind,
            name=name,
            port=port,
            status=LaunchStatus.SUCCESS,
            url=url,
            token=token,
            http_status=http_status,
            error=error,
            job=job,
        )

    async def restart_repository(
        self,
        sandbox_id: str,
        repository: Repository,
        root_dir: str,
        cleanup: dict[int, CleanupOutcome] | None = None,
    ) -> RepositoryServiceResult:
        """Launch and verify the three daemons of one repository.

        Failures are recorded per service and never raised.
        """
        repo_dir = repository_dir(root_dir, self._config.projects_dir, repository.name)
        cleanup_report = [
            PortCleanup(port=port, outcome=outcome) for port, outcome in (cleanup or {}).items()
        ]

        try:
            exists = await self.directory_exists(sandbox_id, repo_dir)
        except Exception as e:
            logger.warning(
                "Directory check failed",
                sandbox_id=sandbox_id,
                repository=repository.name,
                error=str(e),
            )
            return RepositoryServiceResult(
                repository_id=repository.id,
                repository_name=repository.name,
                status=RepositoryStatus.FAILED,
                services=[
                    ServiceLaunchResult(
                        kind=kind,
                        name=f"{SERVICE_LABELS[kind]} ({repository.name})",
                        port=port,
                        status=LaunchStatus.FAILED,
                        error=f"Directory check failed: {e}",
                    )
                    for kind, port in repository.ports.items()
                ],
                cleanup=cleanup_report,
                message=str(e),
            )

        if not exists:
            logger.info(
                "Repository directory missing, skipping",
                sandbox_id=sandbox_id,
                repository=repository.name,
                path=repo_dir,
            )
            return RepositoryServiceResult(
                repository_id=repository.id,
                repository_name=repository.name,
                status=RepositoryStatus.SKIPPED,
                cleanup=cleanup_report,
                message=f"Repository directory not found: {repo_dir}",
            )

        services: list[ServiceLaunchResult] = []
        for kind, port in repository.ports.items():
            try:
                services.append(await self.launch_service(sandbox_id, repository, kind, repo_dir))
            except Exception as e:
                logger.warning(
                    "Service launch failed",
                    sandbox_id=sandbox_id,
                    repository=repository.name,
                    service=kind.value,
                    port=port,
                    error=str(e),
                )
                services.append(
                    ServiceLaunchResult(
                        kind=kind,
                        name=f"{SERVICE_LABELS[kind]} ({repository.name})",
                        port=port,
                        status=LaunchStatus.FAILED,
                        error=str(e),
                    )
                )

        return RepositoryServiceResult(
            repository_id=repository.id,
            repository_name=repository.name,
            status=RepositoryStatus.COMPLETED,
            services=services,
            cleanup=cleanup_report,
        )

    async def restart_services_complete(self, sandbox_id: str) -> ServiceRestartResult:
        """Kill, relaunch and verify every service of a sandbox.

        Args:
            sandbox_id: Sandbox whose services to restart

        Returns:
            Per-repository results and summary counts

        Raises:
            ValidationError: If the sandbox ID is malformed
            SandboxNotFoundError: If the sandbox or its repository record is unknown
            SandboxUnavailableError: If a suspended sandbox could not be woken up
            RemoteCommandError: If the sandbox could not be inspected at all
        """
        validate_sandbox_id(sandbox_id)
        logger.info("Restarting workspace services", sandbox_id=sandbox_id)

        try:
            result = await self._restart_all(sandbox_id)
        except Exception:
            metrics.record_restart_error()
            raise
        metrics.record_restart(result)
        return result

    async def _restart_all(self, sandbox_id: str) -> ServiceRestartResult:
        await self.ensure_sandbox_running(sandbox_id)

        repositories = await self._store.get_repositories(sandbox_id)
        if repositories is None:
            raise SandboxNotFoundError(
                sandbox_id, f"No repositories registered for workspace {sandbox_id}"
            )
        if not repositories:
            return ServiceRestartResult(
                sandbox_id=sandbox_id,
                success=True,
                message="No repositories to start",
                summary=RestartSummary(),
            )

        root_dir = await self._provider.get_root_dir(sandbox_id)

        # Kill everything first so one settle period covers all repositories
        cleanups = {
            repository.id: await self.cleanup_ports(sandbox_id, repository.ports.as_list())
            for repository in repositories
        }
        await asyncio.sleep(self._config.kill_settle_seconds)

        per_repository = [
            await self.restart_repository(
                sandbox_id, repository, root_dir, cleanups.get(repository.id)
            )
            for repository in repositories
        ]

        summary = summarize(per_repository)
        await self._persist_links(sandbox_id, per_repository)

        if summary.total_services == 0:
            message = "No repository directories found"
        else:
            message = (
                f"Started {summary.successful}/{summary.total_services} services "
                f"across {summary.repositories - summary.skipped} repositories"
            )
        if summary.skipped:
            message += f" ({summary.skipped} skipped)"

        logger.info(
            "Workspace services restarted",
            sandbox_id=sandbox_id,
            repositories=summary.repositories,
            successful=summary.successful,
            failed=summary.failed,
            skipped=summary.skipped,
        )
        return ServiceRestartResult(
            sandbox_id=sandbox_id,
            success=summary.failed == 0,
            message=message,
            summary=summary,
            per_repository=per_repository,
        )

    async def _persist_links(
        self, sandbox_id: str, per_repository: list[RepositoryServiceResult]
    ) -> None:
        links: dict[str, dict[str, tuple[str, str | None]]] = {}
        for result in per_repository:
            for service in result.services:
                if service.status == LaunchStatus.SUCCESS and service.url:
                    links.setdefault(result.repository_id, {})[service.kind.value] = (
                        service.url,
                        service.token,
                    )
        if not links:
            return
        try:
            await self._store.update_service_links(sandbox_id, links)
        except Exception as e:
            logger.warning("Failed to persist service links", sandbox_id=sandbox_id, error=str(e))


def summarize(per_repository: list[RepositoryServiceResult]) -> RestartSummary:
    """Aggregate counts. Services of skipped repositories are not counted."""
    summary = RestartSummary(repositories=len(per_repository))
    for result in per_repository:
        if result.status == RepositoryStatus.SKIPPED:
            summary.skipped += 1
            continue
        summary.total_services += len(result.services)
        summary.successful += result.successful
        summary.failed += result.failed
    return summary
