"""Sandbox provider interface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from workspace_engine.models.health import SandboxState

# Provider states that mean the session is up or on its way there
RUNNING_STATES = frozenset({"started", "running"})
TRANSITIONAL_STATES = frozenset({"starting", "creating", "restoring", "pulling_snapshot"})
ERROR_STATES = frozenset({"error", "build_failed", "unknown"})


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class PreviewLink:
    """Externally reachable URL for a sandbox port."""

    url: str
    token: str | None = None


def normalize_state(raw_state: str | None) -> SandboxState:
    """Collapse provider lifecycle states onto started/stopped/error."""
    state = (raw_state or "").lower()
    if state in RUNNING_STATES:
        return SandboxState.STARTED
    if state in ERROR_STATES or not state:
        return SandboxState.ERROR
    return SandboxState.STOPPED


class SandboxProvider(Protocol):
    """Remote compute session control API.

    Implementations raise SandboxNotFoundError for unknown sessions and
    RemoteCommandError for anything transient.
    """

    async def create(self, labels: dict[str, str] | None = None) -> str: ...

    async def get_state(self, sandbox_id: str) -> str: ...

    async def start(self, sandbox_id: str, timeout: float | None = None) -> None: ...

    async def stop(self, sandbox_id: str, timeout: float | None = None) -> None: ...

    async def delete(self, sandbox_id: str) -> None: ...

    async def execute_command(
        self,
        sandbox_id: str,
        command: str,
        cwd: str | None = None,
        timeout: int | None = None,
    ) -> ExecResult: ...

    async def get_preview_link(self, sandbox_id: str, port: int) -> PreviewLink: ...

    async def get_root_dir(self, sandbox_id: str) -> str: ...
