"""Tests for the health state machine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from workspace_engine.managers.health_state import (
    HealthPolicy,
    HealthStateMachine,
    classify_report,
    describe_report,
)
from workspace_engine.models.health import (
    HealthPhase,
    SandboxHealthReport,
    SandboxState,
    ServiceState,
    ServiceStatus,
)
from workspace_engine.models.repository import ServiceKind

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def make_report(running: int, total: int = 3, state: SandboxState = SandboxState.STARTED) -> SandboxHealthReport:
    kinds = list(ServiceKind)
    services = [
        ServiceStatus(
            name=f"svc-{i}",
            kind=kinds[i % 3],
            repository_id="r1",
            repository_name="api",
            port=8080 + i,
            state=ServiceState.RUNNING if i < running else ServiceState.STOPPED,
        )
        for i in range(total)
    ]
    return SandboxHealthReport(sandbox_id="sb-1", sandbox_state=state, services=services)


def machine(restart_timeout: float = 180.0) -> HealthStateMachine:
    return HealthStateMachine(
        HealthPolicy(poll_interval=120, restart_poll_interval=5, restart_timeout=restart_timeout)
    )


class TestClassifyReport:
    """Tests for report classification."""

    def test_all_running_is_healthy(self) -> None:
        """Test a fully running sandbox is healthy."""
        assert classify_report(make_report(3)) == HealthPhase.HEALTHY

    def test_some_running_is_degraded(self) -> None:
        """Test two of three running is degraded."""
        report = make_report(2)
        assert classify_report(report) == HealthPhase.DEGRADED
        assert describe_report(report) == "2/3 services running"

    def test_stopped_sandbox(self) -> None:
        """Test a stopped sandbox is stopped regardless of services."""
        report = make_report(0, state=SandboxState.STOPPED)
        assert classify_report(report) == HealthPhase.STOPPED
        assert describe_report(report) == "Container is stopped"

    def test_healthy_has_no_description(self) -> None:
        """Test a healthy report carries no error text."""
        assert describe_report(make_report(3)) is None


class TestSteadyState:
    """Tests for transitions outside a restart."""

    def test_initial_state(self) -> None:
        """Test a new machine is unknown."""
        sm = machine()
        assert sm.state.phase == HealthPhase.UNKNOWN
        assert sm.poll_interval == 120

    def test_check_then_healthy(self) -> None:
        """Test Unknown -> Checking -> Healthy."""
        sm = machine()
        assert sm.begin_check().phase == HealthPhase.CHECKING
        state = sm.apply_report(make_report(3), T0)
        assert state.phase == HealthPhase.HEALTHY
        assert state.error is None
        assert state.last_checked_at == T0

    def test_degraded(self) -> None:
        """Test a partial report surfaces its error."""
        sm = machine()
        sm.begin_check()
        state = sm.apply_report(make_report(2), T0)
        assert state.phase == HealthPhase.DEGRADED
        assert state.error == "2/3 services running"

    def test_probe_failure_is_degraded(self) -> None:
        """Test a probe that produced no report degrades the sandbox."""
        sm = machine()
        sm.begin_check()
        state = sm.apply_failure("ssh timeout", T0)
        assert state.phase == HealthPhase.DEGRADED
        assert state.error == "ssh timeout"


class TestRestarting:
    """Tests for transitions during a restart."""

    def test_begin_restart(self) -> None:
        """Test restarting clears the error and speeds up polling."""
        sm = machine()
        sm.apply_report(make_report(1), T0)
        state = sm.begin_restart(T0)
        assert state.phase == HealthPhase.RESTARTING
        assert state.restart_started_at == T0
        assert state.error is None
        assert sm.poll_interval == 5

    def test_check_keeps_restarting(self) -> None:
        """Test a follow-up check does not hide the restart."""
        sm = machine()
        sm.begin_restart(T0)
        assert sm.begin_check().phase == HealthPhase.RESTARTING

    def test_unhealthy_reports_suppressed(self) -> None:
        """Test partial reports stay in Restarting with no error before timeout."""
        sm = machine()
        sm.begin_restart(T0)
        state = sm.apply_report(make_report(1), T0 + timedelta(seconds=30))
        assert state.phase == HealthPhase.RESTARTING
        assert state.error is None
        assert state.last_report is not None
        assert state.last_report.running_count == 1

    def test_failures_suppressed(self) -> None:
        """Test probe failures are expected while daemons come up."""
        sm = machine()
        sm.begin_restart(T0)
        state = sm.apply_failure("connection refused", T0 + timedelta(seconds=10))
        assert state.phase == HealthPhase.RESTARTING
        assert state.error is None

    def test_healthy_ends_restart(self) -> None:
        """Test a healthy report ends the restart."""
        sm = machine()
        sm.begin_restart(T0)
        sm.restart_finished()
        state = sm.apply_report(make_report(3), T0 + timedelta(seconds=20))
        assert state.phase == HealthPhase.HEALTHY
        assert state.restart_started_at is None
        assert sm.poll_interval == 120

    def test_timeout_surfaces_error(self) -> None:
        """Test an unhealthy report after the timeout leaves Restarting."""
        sm = machine(restart_timeout=60)
        sm.begin_restart(T0)
        sm.restart_finished()
        sm.apply_report(make_report(1), T0 + timedelta(seconds=30))
        state = sm.apply_report(make_report(2), T0 + timedelta(seconds=61))
        assert state.phase == HealthPhase.DEGRADED
        assert state.error is not None
        assert "did not recover" in state.error
        assert "2/3 services running" in state.error

    def test_failure_after_timeout(self) -> None:
        """Test a probe failure after the timeout degrades the sandbox."""
        sm = machine(restart_timeout=60)
        sm.begin_restart(T0)
        sm.restart_finished()
        state = sm.apply_failure("connection refused", T0 + timedelta(seconds=90))
        assert state.phase == HealthPhase.DEGRADED
        assert state.error is not None
        assert "connection refused" in state.error

    def test_restart_timed_out(self) -> None:
        """Test the timeout is measured from the restart start."""
        sm = machine(restart_timeout=60)
        assert sm.restart_timed_out(T0) is False
        sm.begin_restart(T0)
        assert sm.restart_timed_out(T0 + timedelta(seconds=59)) is False
        assert sm.restart_timed_out(T0 + timedelta(seconds=60)) is True

    def test_restart_failed(self) -> None:
        """Test a restart that raised degrades immediately."""
        sm = machine()
        sm.begin_restart(T0)
        state = sm.restart_failed("sandbox unreachable", T0)
        assert state.phase == HealthPhase.DEGRADED
        assert state.error == "sandbox unreachable"
        assert state.restart_started_at is None
        assert state.restart_in_flight is False


class TestRestartInFlight:
    """Tests for reports that arrive while the restart operation is still running."""

    def test_begin_restart_marks_in_flight(self) -> None:
        """Test begin_restart and restart_finished bracket the operation."""
        sm = machine()
        assert sm.begin_restart(T0).restart_in_flight is True
        state = sm.restart_finished()
        assert state.restart_in_flight is False
        assert state.phase == HealthPhase.RESTARTING

    def test_healthy_report_before_kill_keeps_restarting(self) -> None:
        """Test the old daemons still running do not end the restart."""
        sm = machine()
        sm.begin_restart(T0)
        sm.begin_check()
        state = sm.apply_report(make_report(3), T0 + timedelta(seconds=1))
        assert state.phase == HealthPhase.RESTARTING
        assert state.restart_started_at == T0
        assert state.last_report is not None
        assert state.last_report.all_running

    def test_report_during_kill_after_healthy_keeps_restarting(self) -> None:
        """Test a healthy then a killed report leave no error while in flight."""
        sm = machine()
        sm.begin_restart(T0)
        sm.apply_report(make_report(3), T0 + timedelta(seconds=1))
        state = sm.apply_report(make_report(0), T0 + timedelta(seconds=2))
        assert state.phase == HealthPhase.RESTARTING
        assert state.error is None

    def test_timeout_not_applied_while_in_flight(self) -> None:
        """Test a long-running restart is not reported as failed to recover."""
        sm = machine(restart_timeout=60)
        sm.begin_restart(T0)
        state = sm.apply_report(make_report(1), T0 + timedelta(seconds=90))
        assert state.phase == HealthPhase.RESTARTING
        assert state.error is None
        state = sm.apply_failure("connection refused", T0 + timedelta(seconds=95))
        assert state.phase == HealthPhase.RESTARTING
        assert state.error is None

    def test_overlapping_restarts(self) -> None:
        """Test the first restart finishing does not end a second one in flight."""
        sm = machine()
        sm.begin_restart(T0)
        sm.begin_restart(T0 + timedelta(seconds=1))
        sm.restart_finished()
        state = sm.apply_report(make_report(3), T0 + timedelta(seconds=2))
        assert state.phase == HealthPhase.RESTARTING
        sm.restart_finished()
        state = sm.apply_report(make_report(3), T0 + timedelta(seconds=3))
        assert state.phase == HealthPhase.HEALTHY

    def test_finished_without_restart(self) -> None:
        """Test the counter never goes negative."""
        sm = machine()
        assert sm.restart_finished().restarts_in_flight == 0
