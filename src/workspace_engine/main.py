"""Workspace Engine - service orchestration for cloud development sandboxes."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from workspace_engine.config import settings
from workspace_engine.deps import InternalAuth, cleanup_services
from workspace_engine.routes import (
    health_router,
    monitor_router,
    provisioning_router,
    services_router,
    terminal_router,
)
from workspace_engine.sentry import configure_logging, init_sentry

SERVICE_NAME = "workspace-engine"

init_sentry(
    SERVICE_NAME,
    settings.sentry_dsn,
    environment=settings.environment,
    redis_tracing=settings.repository_store == "redis",
)

# Configure unified logging (structlog + Python logging + Sentry breadcrumbs)
logger = configure_logging(SERVICE_NAME, level=settings.log_level)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan - startup and shutdown."""
    logger.info(
        "Starting Workspace Engine",
        environment=settings.environment,
        repository_store=settings.repository_store,
    )

    yield

    logger.info("Shutting down Workspace Engine")
    # Stops every health monitor so no polling task outlives the app
    try:
        await asyncio.wait_for(cleanup_services(), timeout=settings.shutdown_timeout)
        logger.info("Graceful shutdown completed")
    except TimeoutError:
        logger.warning(
            "Shutdown timed out, forcing exit",
            shutdown_timeout=settings.shutdown_timeout,
        )


app = FastAPI(
    title="Workspace Engine",
    description="Port allocation, service lifecycle and health monitoring for workspace sandboxes",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(services_router)
app.include_router(provisioning_router)
app.include_router(monitor_router)
app.include_router(terminal_router)


@app.get("/")
async def root(_auth: InternalAuth) -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": SERVICE_NAME,
        "version": "0.1.0",
    }
