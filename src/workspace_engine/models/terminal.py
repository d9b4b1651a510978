"""Terminal command relay models."""

from enum import Enum

from pydantic import Field

from workspace_engine.models.base import CamelModel


class TerminalTarget(str, Enum):
    TERMINAL = "terminal"
    AGENT = "agent"


class TerminalInputType(str, Enum):
    TEXT = "text"  # Typed and executed
    KEY = "key"  # Named key, e.g. "Ctrl+C"
    PASTE = "paste"  # Typed, not executed


class TerminalCommandRequest(CamelModel):
    sandbox_id: str
    repository_id: str | None = None
    target: TerminalTarget = TerminalTarget.TERMINAL
    type: TerminalInputType = TerminalInputType.TEXT
    command: str = Field(..., min_length=1, max_length=100_000)


class TerminalCommandResponse(CamelModel):
    success: bool
    message: str
    bytes_sent: int = 0
