"""Prometheus metrics for service restarts and health monitoring."""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

from workspace_engine.models.services import RestartSummary, ServiceRestartResult

RESTARTS = Counter(
    "workspace_engine_restarts_total",
    "Full service restarts by outcome",
    ["outcome"],
)
SERVICE_LAUNCHES = Counter(
    "workspace_engine_service_launches_total",
    "Daemon launches by service kind and result",
    ["kind", "status"],
)
SKIPPED_REPOSITORIES = Counter(
    "workspace_engine_skipped_repositories_total",
    "Repositories skipped because their directory was missing",
)
HEALTH_TRANSITIONS = Counter(
    "workspace_engine_health_transitions_total",
    "Health phase changes by target phase",
    ["phase"],
)
OBSERVED_WORKSPACES = Gauge(
    "workspace_engine_observed_workspaces",
    "Sandboxes with an active health monitor",
)


def record_restart(result: ServiceRestartResult) -> None:
    RESTARTS.labels(outcome="success" if result.success else "partial").inc()
    _record_summary(result.summary)
    for repository in result.per_repository:
        for service in repository.services:
            SERVICE_LAUNCHES.labels(kind=service.kind.value, status=service.status.value).inc()


def record_restart_error() -> None:
    RESTARTS.labels(outcome="error").inc()


def _record_summary(summary: RestartSummary) -> None:
    if summary.skipped:
        SKIPPED_REPOSITORIES.inc(summary.skipped)


def render() -> tuple[bytes, str]:
    """Current metrics in the Prometheus text format, with its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
