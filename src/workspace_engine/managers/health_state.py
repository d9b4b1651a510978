"""Health state machine for one observed sandbox.

Pure transitions only: no I/O, no timers. The clock is passed in by the
caller so restart timeouts can be tested without waiting.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from workspace_engine.config import settings
from workspace_engine.models.health import HealthPhase, SandboxHealthReport, SandboxState


@dataclass
class HealthPolicy:
    """Polling cadence and restart timeout. Tunable, not contract."""

    poll_interval: float = 120.0  # Steady state, keeps load on the sandbox low
    restart_poll_interval: float = 5.0  # While restarting, for timely feedback
    restart_timeout: float = 180.0
    initial_check_delay: float = 2.0
    restarting_check_delay: float = 8.0  # First check after a restart was issued

    @classmethod
    def from_settings(cls) -> HealthPolicy:
        return cls(
            poll_interval=settings.health_poll_interval,
            restart_poll_interval=settings.restart_poll_interval,
            restart_timeout=settings.restart_timeout,
            initial_check_delay=settings.initial_check_delay,
            restarting_check_delay=settings.restarting_check_delay,
        )


@dataclass(frozen=True)
class HealthState:
    phase: HealthPhase = HealthPhase.UNKNOWN
    last_report: SandboxHealthReport | None = None
    restart_started_at: datetime | None = None
    last_checked_at: datetime | None = None
    # Error surfaced to the user; stays None while restarting
    error: str | None = None
    # Restart operations issued but not yet returned
    restarts_in_flight: int = 0

    @property
    def restart_in_flight(self) -> bool:
        return self.restarts_in_flight > 0


def classify_report(report: SandboxHealthReport) -> HealthPhase:
    """Phase a report implies outside of a restart."""
    if report.sandbox_state != SandboxState.STARTED:
        return HealthPhase.STOPPED
    if report.all_running:
        return HealthPhase.HEALTHY
    return HealthPhase.DEGRADED


def describe_report(report: SandboxHealthReport) -> str | None:
    if report.sandbox_state != SandboxState.STARTED:
        return report.error or f"Container is {report.sandbox_state.value}"
    if report.all_running:
        return None
    return f"{report.running_count}/{len(report.services)} services running"


class HealthStateMachine:
    """Owns a HealthState and is the only thing that replaces it."""

    def __init__(self, policy: HealthPolicy | None = None) -> None:
        self._policy = policy or HealthPolicy()
        self._state = HealthState()

    @property
    def state(self) -> HealthState:
        return self._state

    @property
    def policy(self) -> HealthPolicy:
        return self._policy

    @property
    def poll_interval(self) -> float:
        if self._state.phase == HealthPhase.RESTARTING:
            return self._policy.restart_poll_interval
        return self._policy.poll_interval

    def restart_timed_out(self, now: datetime) -> bool:
        started = self._state.restart_started_at
        if started is None:
            return False
        return (now - started).total_seconds() >= self._policy.restart_timeout

    def begin_check(self) -> HealthState:
        # A restart stays visible while its follow-up checks run
        if self._state.phase != HealthPhase.RESTARTING:
            self._state = replace(self._state, phase=HealthPhase.CHECKING)
        return self._state

    def apply_report(self, report: SandboxHealthReport, now: datetime) -> HealthState:
        phase = classify_report(report)

        if self._state.phase == HealthPhase.RESTARTING:
            if self._state.restart_in_flight:
                # Still the old daemons, or ones mid-kill; neither says anything yet
                self._state = replace(self._state, last_report=report, last_checked_at=now)
            elif phase == HealthPhase.HEALTHY:
                self._state = HealthState(
                    phase=HealthPhase.HEALTHY, last_report=report, last_checked_at=now
                )
            elif self.restart_timed_out(now):
                detail = describe_report(report)
                self._state = HealthState(
                    phase=phase,
                    last_report=report,
                    last_checked_at=now,
                    error=f"Services did not recover after restart: {detail}",
                )
            else:
                self._state = replace(self._state, last_report=report, last_checked_at=now)
            return self._state

        self._state = HealthState(
            phase=phase,
            last_report=report,
            last_checked_at=now,
            error=describe_report(report),
        )
        return self._state

    def apply_failure(self, error: str, now: datetime) -> HealthState:
        """A probe could not produce a report at all."""
        if self._state.phase == HealthPhase.RESTARTING:
            if self._state.restart_in_flight or not self.restart_timed_out(now):
                # Expected while daemons come back up
                self._state = replace(self._state, last_checked_at=now)
                return self._state
            last = self._state.last_report
            phase = (
                classify_report(last)
                if last is not None and classify_report(last) != HealthPhase.HEALTHY
                else HealthPhase.DEGRADED
            )
            self._state = HealthState(
                phase=phase,
                last_report=last,
                last_checked_at=now,
                error=f"Services did not recover after restart: {error}",
            )
            return self._state

        self._state = replace(
            self._state, phase=HealthPhase.DEGRADED, last_checked_at=now, error=error
        )
        return self._state

    def begin_restart(self, now: datetime) -> HealthState:
        self._state = replace(
            self._state,
            phase=HealthPhase.RESTARTING,
            restart_started_at=now,
            error=None,
            restarts_in_flight=self._state.restarts_in_flight + 1,
        )
        return self._state

    def restart_finished(self) -> HealthState:
        """The restart operation returned.

        The phase stays as it is; the follow-up checks decide whether the
        services came back before the restart timeout.
        """
        self._state = replace(
            self._state, restarts_in_flight=max(0, self._state.restarts_in_flight - 1)
        )
        return self._state

    def restart_failed(self, error: str, now: datetime) -> HealthState:
        """The restart operation itself raised; no recovery is on its way."""
        self._state = replace(
            self._state,
            phase=HealthPhase.DEGRADED,
            restart_started_at=None,
            last_checked_at=now,
            error=error,
            restarts_in_flight=max(0, self._state.restarts_in_flight - 1),
        )
        return self._state
