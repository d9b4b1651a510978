"""Dependency injection for the workspace engine."""

from __future__ import annotations

import secrets
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, status

from workspace_engine.config import settings
from workspace_engine.errors import (
    MissingCredentialsError,
    RemoteCommandError,
    SandboxNotFoundError,
)
from workspace_engine.managers.health_monitor import HealthMonitorRegistry
from workspace_engine.managers.health_prober import HealthProber
from workspace_engine.managers.service_manager import ServiceLifecycleManager
from workspace_engine.providers.base import SandboxProvider
from workspace_engine.providers.daytona import DaytonaProvider
from workspace_engine.storage.repository_store import (
    InMemoryRepositoryStore,
    RedisRepositoryStore,
    RepositoryStore,
)
from workspace_engine.terminal.relay import TerminalRelay
from workspace_engine.validation import ValidationError

logger = structlog.get_logger()


def _presented_token(header_token: str | None, authorization: str | None) -> str | None:
    # The dedicated header wins; Authorization only counts as a bearer token
    if header_token:
        return header_token
    scheme, _, credentials = (authorization or "").partition(" ")
    if scheme == "Bearer" and credentials:
        return credentials
    return None


def validate_internal_auth(
    x_internal_service_token: str | None = None,
    authorization: str | None = None,
) -> None:
    """Check the token the UI backend sends with every engine call.

    Fails closed: without a configured token every request is refused with
    500, so a misconfigured deployment is never left open.
    """
    expected = settings.internal_service_token
    if not expected:
        logger.error("Internal service token is not configured, refusing request")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Service authentication not configured",
        )

    presented = _presented_token(x_internal_service_token, authorization)
    if presented is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing service token",
        )
    if not secrets.compare_digest(presented.encode(), expected.encode()):
        logger.warning("Rejected request with a wrong service token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service token",
        )


def verify_internal_auth(
    x_internal_service_token: Annotated[
        str | None, Header(alias="X-Internal-Service-Token")
    ] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """FastAPI dependency wrapper around validate_internal_auth."""
    validate_internal_auth(x_internal_service_token, authorization)


InternalAuth = Annotated[None, Depends(verify_internal_auth)]


def to_http_exception(error: Exception, sandbox_id: str | None = None) -> HTTPException:
    """Map engine errors onto HTTP responses."""
    if isinstance(error, HTTPException):
        return error
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, SandboxNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, MissingCredentialsError):
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sandbox provider not configured: {error}",
        )
    if isinstance(error, RemoteCommandError):
        logger.warning("Sandbox unavailable", sandbox_id=sandbox_id, error=str(error))
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error))

    logger.exception(
        "Unhandled workspace error",
        sandbox_id=sandbox_id,
        error_type=type(error).__name__,
    )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{type(error).__name__}: {error}",
    )


class ServiceSingleton:
    """Singleton holder for the engine's long-lived collaborators."""

    _provider: SandboxProvider | None = None
    _repository_store: RepositoryStore | None = None
    _lifecycle: ServiceLifecycleManager | None = None
    _prober: HealthProber | None = None
    _monitors: HealthMonitorRegistry | None = None
    _relay: TerminalRelay | None = None

    @classmethod
    def get_provider(cls) -> SandboxProvider:
        """Get or create the sandbox provider."""
        if cls._provider is None:
            cls._provider = DaytonaProvider(
                api_key=settings.daytona_api_key,
                api_url=settings.daytona_api_url,
                target=settings.daytona_target,
            )
        return cls._provider

    @classmethod
    def get_repository_store(cls) -> RepositoryStore:
        """Get or create the repository metadata store."""
        if cls._repository_store is None:
            if settings.repository_store == "memory":
                cls._repository_store = InMemoryRepositoryStore()
            else:
                cls._repository_store = RedisRepositoryStore(settings.redis_url)
        return cls._repository_store

    @classmethod
    def get_lifecycle_manager(cls) -> ServiceLifecycleManager:
        if cls._lifecycle is None:
            cls._lifecycle = ServiceLifecycleManager(
                provider=cls.get_provider(),
                store=cls.get_repository_store(),
            )
        return cls._lifecycle

    @classmethod
    def get_prober(cls) -> HealthProber:
        if cls._prober is None:
            cls._prober = HealthProber(
                provider=cls.get_provider(),
                store=cls.get_repository_store(),
            )
        return cls._prober

    @classmethod
    def get_monitors(cls) -> HealthMonitorRegistry:
        if cls._monitors is None:
            cls._monitors = HealthMonitorRegistry(
                prober=cls.get_prober(),
                lifecycle=cls.get_lifecycle_manager(),
            )
        return cls._monitors

    @classmethod
    def get_relay(cls) -> TerminalRelay:
        if cls._relay is None:
            cls._relay = TerminalRelay(
                provider=cls.get_provider(),
                store=cls.get_repository_store(),
            )
        return cls._relay

    @classmethod
    def clear_instance(cls) -> None:
        """Clear the singleton instances."""
        cls._provider = None
        cls._repository_store = None
        cls._lifecycle = None
        cls._prober = None
        cls._monitors = None
        cls._relay = None


def get_provider() -> SandboxProvider:
    """Get the sandbox provider instance."""
    try:
        return ServiceSingleton.get_provider()
    except MissingCredentialsError as e:
        raise to_http_exception(e) from e


def get_repository_store() -> RepositoryStore:
    """Get the repository metadata store instance."""
    return ServiceSingleton.get_repository_store()


def get_lifecycle_manager() -> ServiceLifecycleManager:
    """Get the service lifecycle manager instance."""
    try:
        return ServiceSingleton.get_lifecycle_manager()
    except MissingCredentialsError as e:
        raise to_http_exception(e) from e


def get_prober() -> HealthProber:
    """Get the health prober instance."""
    try:
        return ServiceSingleton.get_prober()
    except MissingCredentialsError as e:
        raise to_http_exception(e) from e


def get_monitors() -> HealthMonitorRegistry:
    """Get the health monitor registry instance."""
    try:
        return ServiceSingleton.get_monitors()
    except MissingCredentialsError as e:
        raise to_http_exception(e) from e


def get_relay() -> TerminalRelay:
    """Get the terminal relay instance."""
    try:
        return ServiceSingleton.get_relay()
    except MissingCredentialsError as e:
        raise to_http_exception(e) from e


async def cleanup_services() -> None:
    """Stop every health monitor and close the metadata store."""
    if ServiceSingleton._monitors is not None:
        await ServiceSingleton._monitors.shutdown()
    store = ServiceSingleton._repository_store
    if isinstance(store, RedisRepositoryStore):
        await store.close()
    ServiceSingleton.clear_instance()
    logger.info("Workspace engine services cleaned up")
