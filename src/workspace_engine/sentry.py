"""Sentry and structured logging setup for the workspace engine.

Logging goes through structlog; records from other libraries (uvicorn,
websockets, redis) are rendered by the same pipeline so the output is one
format. Every log event also becomes a Sentry breadcrumb, which gives
captured errors the restart and probe history that led to them.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from workspace_engine.config import settings

if TYPE_CHECKING:
    from sentry_sdk.types import Event

DEV_SAMPLE_RATE = 1.0

FILTERED = "[Filtered]"

# Credentials that reach us as request headers
SENSITIVE_HEADERS = frozenset(
    {"authorization", "cookie", "x-internal-service-token", "x-daytona-preview-token"}
)
SENSITIVE_KEY_PARTS = ("password", "token", "secret", "api_key", "apikey", "credentials")

# Probe and scrape endpoints hit every few seconds
NOISE_TRANSACTIONS = frozenset({"/health", "/ready", "/metrics"})

# Keys structlog adds itself; not useful as breadcrumb data
_LOG_META_KEYS = frozenset({"event", "level", "timestamp", "logger", "_record", "_from_structlog"})


def _breadcrumb(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    data = {key: value for key, value in event_dict.items() if key not in _LOG_META_KEYS}
    sentry_sdk.add_breadcrumb(
        category=event_dict.get("logger") or "log",
        message=str(event_dict.get("event", "")),
        level=event_dict.get("level", "info"),
        data=data or None,
    )
    return event_dict


def _passthrough(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    # The console renderer formats exceptions itself
    return event_dict


def configure_logging(
    service_name: str,
    level: int | str = logging.INFO,
    json_logs: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """Route structlog and standard library logging through one renderer.

    JSON output is the default outside development. Safe to call again on
    reload; the root handler is replaced, not duplicated.
    """
    if json_logs is None:
        json_logs = settings.environment != "development"

    shared: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info if json_logs else _passthrough,
                renderer,
            ],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            _breadcrumb,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(service_name)
    return logger


def scrub_event(event: Event, _hint: dict[str, Any]) -> Event | None:
    """Replace credentials in request headers and extra data."""
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for name in headers:
            if name.lower() in SENSITIVE_HEADERS:
                headers[name] = FILTERED

    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in extra:
            if any(part in key.lower() for part in SENSITIVE_KEY_PARTS):
                extra[key] = FILTERED
    return event


def drop_noise_transactions(event: Event, _hint: dict[str, Any]) -> Event | None:
    if event.get("transaction") in NOISE_TRANSACTIONS:
        return None
    return event


def init_sentry(
    service_name: str,
    dsn: str | None = None,
    *,
    environment: str | None = None,
    traces_sample_rate: float | None = None,
    profiles_sample_rate: float | None = None,
    redis_tracing: bool = False,
) -> bool:
    """Initialize the Sentry SDK.

    Sampling is full in development and uses the configured rates elsewhere.

    Returns:
        False when no DSN is configured and Sentry stays off
    """
    if not dsn:
        return False

    environment = environment or settings.environment
    if environment == "development":
        traces_sample_rate = profiles_sample_rate = DEV_SAMPLE_RATE

    integrations: list[Any] = [
        StarletteIntegration(transaction_style="endpoint"),
        FastApiIntegration(transaction_style="endpoint"),
        HttpxIntegration(),
        AsyncioIntegration(),
        LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
    ]
    if redis_tracing:
        integrations.append(RedisIntegration())

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"{service_name}@0.1.0",
        server_name=service_name,
        traces_sample_rate=(
            settings.sentry_traces_sample_rate if traces_sample_rate is None else traces_sample_rate
        ),
        profiles_sample_rate=(
            settings.sentry_profiles_sample_rate
            if profiles_sample_rate is None
            else profiles_sample_rate
        ),
        integrations=integrations,
        before_send=scrub_event,
        before_send_transaction=drop_noise_transactions,
        send_default_pii=False,
        ignore_errors=[ConnectionRefusedError, ConnectionResetError, KeyboardInterrupt],
    )
    sentry_sdk.set_tag("service", service_name)
    return True


def capture_restart_failure(sandbox_id: str, error: str) -> None:
    """Report a restart that could not run at all. No-op without a DSN."""
    with sentry_sdk.isolation_scope() as scope:
        scope.set_tag("sandbox_id", sandbox_id)
        scope.set_context("restart", {"sandbox_id": sandbox_id, "error": error})
        sentry_sdk.capture_message(f"Service restart failed for {sandbox_id}", level="warning")
