"""Error taxonomy for the workspace engine.

Partial failures (one service or repository) are never raised; they are
reported inside result objects. Only failures that make an operation
impossible as a whole surface as exceptions.
"""

from __future__ import annotations


class WorkspaceEngineError(Exception):
    """Base class for all workspace engine errors."""


class PreconditionError(WorkspaceEngineError):
    """The operation cannot run at all. Not retried."""


class MissingCredentialsError(PreconditionError):
    """Sandbox provider credentials are not configured."""


class SandboxNotFoundError(PreconditionError):
    """The sandbox is unknown to the provider or has no repository record."""

    def __init__(self, sandbox_id: str, reason: str | None = None) -> None:
        self.sandbox_id = sandbox_id
        super().__init__(reason or f"Workspace not found: {sandbox_id}")


class RemoteCommandError(WorkspaceEngineError):
    """A remote call against the sandbox failed or timed out.

    Transient: callers may retry at their own discretion.
    """


class SandboxUnavailableError(RemoteCommandError):
    """The sandbox did not become reachable within the allowed wait."""
