"""Sandbox providers."""

from workspace_engine.providers.base import (
    ExecResult,
    PreviewLink,
    SandboxProvider,
    normalize_state,
)
from workspace_engine.providers.daytona import DaytonaProvider

__all__ = [
    "DaytonaProvider",
    "ExecResult",
    "PreviewLink",
    "SandboxProvider",
    "normalize_state",
]
