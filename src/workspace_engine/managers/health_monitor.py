"""Per-sandbox health monitoring.

Each observed sandbox gets one HealthMonitor: a polling task plus a lock
that serializes every transition of its state machine, whether triggered by
the timer, a forced check or a restart.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from workspace_engine import metrics
from workspace_engine.managers.health_state import HealthPolicy, HealthState, HealthStateMachine
from workspace_engine.models.health import HealthStateResponse
from workspace_engine.sentry import capture_restart_failure

if TYPE_CHECKING:
    from workspace_engine.managers.health_prober import HealthProber
    from workspace_engine.managers.service_manager import ServiceLifecycleManager
    from workspace_engine.models.services import ServiceRestartResult

logger = structlog.get_logger()

# Called with (sandbox_id, new_state) whenever the phase changes
HealthCallback = Callable[[str, HealthState], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HealthMonitor:
    """Observes one sandbox until stopped."""

    def __init__(
        self,
        sandbox_id: str,
        prober: HealthProber,
        lifecycle: ServiceLifecycleManager,
        policy: HealthPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sandbox_id = sandbox_id
        self._prober = prober
        self._lifecycle = lifecycle
        self._machine = HealthStateMachine(policy or HealthPolicy.from_settings())
        self._clock = clock
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._deferred_delay: float | None = None
        self._task: asyncio.Task[None] | None = None
        self._callbacks: list[HealthCallback] = []

    @property
    def sandbox_id(self) -> str:
        return self._sandbox_id

    @property
    def state(self) -> HealthState:
        return self._machine.state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def register_callback(self, callback: HealthCallback) -> None:
        self._callbacks.append(callback)

    def snapshot(self) -> HealthStateResponse:
        state = self._machine.state
        return HealthStateResponse(
            sandbox_id=self._sandbox_id,
            phase=state.phase,
            last_report=state.last_report,
            restart_started_at=state.restart_started_at,
            last_checked_at=state.last_checked_at,
            error=state.error,
            poll_interval=self._machine.poll_interval,
        )

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Health monitor started", sandbox_id=self._sandbox_id)

    async def stop(self) -> None:
        """Cancel the polling task and wait for it to finish."""
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("Health monitor stopped", sandbox_id=self._sandbox_id)

    def request_check(self, delay: float = 0.0) -> None:
        """Reset the polling timer so the next check runs after `delay` seconds."""
        self._deferred_delay = delay if delay > 0 else None
        self._wake.set()

    async def _wait(self, delay: float) -> bool:
        """Sleep up to `delay` seconds. Returns True if woken early."""
        if self._wake.is_set():
            self._wake.clear()
            return True
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except TimeoutError:
            return False
        self._wake.clear()
        return True

    async def _poll_loop(self) -> None:
        delay = self._machine.policy.initial_check_delay
        while True:
            woken = await self._wait(delay)
            if woken and self._deferred_delay is not None:
                delay, self._deferred_delay = self._deferred_delay, None
                continue
            try:
                await self.check()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Health check failed", sandbox_id=self._sandbox_id)
            delay = self._machine.poll_interval

    def _notify(self, previous: HealthState, current: HealthState) -> None:
        if previous.phase == current.phase:
            return
        logger.info(
            "Workspace health changed",
            sandbox_id=self._sandbox_id,
            previous=previous.phase.value,
            phase=current.phase.value,
            error=current.error,
        )
        metrics.HEALTH_TRANSITIONS.labels(phase=current.phase.value).inc()
        for callback in self._callbacks:
            try:
                callback(self._sandbox_id, current)
            except Exception:
                logger.exception("Health callback failed", sandbox_id=self._sandbox_id)

    async def check(self) -> HealthState:
        """Probe the sandbox now and apply the result."""
        async with self._lock:
            previous = self._machine.state
            self._machine.begin_check()
            try:
                report = await self._prober.probe(self._sandbox_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                current = self._machine.apply_failure(str(e), self._clock())
            else:
                current = self._machine.apply_report(report, self._clock())
        self._notify(previous, current)
        return current

    async def restart(self) -> ServiceRestartResult:
        """Enter Restarting and run the full service restart.

        Checks that land while the restart is still running never leave
        Restarting. Once it returns, follow-up checks run on the fast restart
        cadence until the sandbox is healthy or the restart times out.

        Raises:
            WorkspaceEngineError: If the restart could not run at all
        """
        async with self._lock:
            previous = self._machine.state
            current = self._machine.begin_restart(self._clock())
        self._notify(previous, current)

        try:
            result = await self._lifecycle.restart_services_complete(self._sandbox_id)
        except asyncio.CancelledError:
            # Synchronous so a repeated cancellation cannot skip it
            self._machine.restart_finished()
            raise
        except Exception as e:
            async with self._lock:
                previous = self._machine.state
                current = self._machine.restart_failed(str(e), self._clock())
            self._notify(previous, current)
            capture_restart_failure(self._sandbox_id, str(e))
            raise

        async with self._lock:
            self._machine.restart_finished()
        self.request_check(self._machine.policy.restarting_check_delay)
        return result


class HealthMonitorRegistry:
    """Holds the monitors of every sandbox currently observed."""

    def __init__(
        self,
        prober: HealthProber,
        lifecycle: ServiceLifecycleManager,
        policy: HealthPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._prober = prober
        self._lifecycle = lifecycle
        self._policy = policy or HealthPolicy.from_settings()
        self._clock = clock
        self._monitors: dict[str, HealthMonitor] = {}

    def __len__(self) -> int:
        return len(self._monitors)

    def get(self, sandbox_id: str) -> HealthMonitor | None:
        return self._monitors.get(sandbox_id)

    def observe(self, sandbox_id: str) -> HealthMonitor:
        """Start observing a sandbox. Idempotent."""
        monitor = self._monitors.get(sandbox_id)
        if monitor is None:
            monitor = HealthMonitor(
                sandbox_id,
                self._prober,
                self._lifecycle,
                policy=self._policy,
                clock=self._clock,
            )
            self._monitors[sandbox_id] = monitor
            metrics.OBSERVED_WORKSPACES.set(len(self._monitors))
        monitor.start()
        return monitor

    async def release(self, sandbox_id: str) -> bool:
        """Stop observing a sandbox. Returns False if it was not observed."""
        monitor = self._monitors.pop(sandbox_id, None)
        if monitor is None:
            return False
        metrics.OBSERVED_WORKSPACES.set(len(self._monitors))
        await monitor.stop()
        return True

    async def shutdown(self) -> None:
        for sandbox_id in list(self._monitors):
            await self.release(sandbox_id)
