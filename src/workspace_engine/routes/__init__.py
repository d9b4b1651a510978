"""Workspace engine routes."""

from workspace_engine.routes.health import router as health_router
from workspace_engine.routes.monitor import router as monitor_router
from workspace_engine.routes.provisioning import router as provisioning_router
from workspace_engine.routes.services import router as services_router
from workspace_engine.routes.terminal import router as terminal_router

__all__ = [
    "health_router",
    "monitor_router",
    "provisioning_router",
    "services_router",
    "terminal_router",
]
