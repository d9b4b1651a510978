"""Tests for relaying one input to a repository's terminal."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from typing import Any

import pytest
from conftest import SANDBOX_ID, FakeSandboxProvider
from websockets.asyncio.server import ServerConnection, serve
from websockets.typing import Subprotocol

from workspace_engine.errors import SandboxNotFoundError
from workspace_engine.models.repository import Repository
from workspace_engine.models.terminal import (
    TerminalCommandRequest,
    TerminalInputType,
    TerminalTarget,
)
from workspace_engine.providers.base import PreviewLink
from workspace_engine.terminal.client import PREVIEW_TOKEN_HEADER
from workspace_engine.terminal.relay import TerminalRelay
from workspace_engine.validation import ValidationError


@pytest.fixture
async def received() -> AsyncGenerator[dict[str, Any], None]:
    """Local WebSocket server standing in for every ttyd daemon."""
    state: dict[str, Any] = {"messages": [], "tokens": [], "closed": asyncio.Event()}

    async def handler(ws: ServerConnection) -> None:
        assert ws.request is not None
        state["tokens"].append(ws.request.headers.get(PREVIEW_TOKEN_HEADER))
        try:
            async for message in ws:
                state["messages"].append(message)
        finally:
            state["closed"].set()

    async with serve(handler, "127.0.0.1", 0, subprotocols=[Subprotocol("tty")]) as server:
        state["url"] = f"http://127.0.0.1:{server.sockets[0].getsockname()[1]}"
        yield state


@pytest.fixture
def routed_provider(
    fake_provider: FakeSandboxProvider,
    received: dict[str, Any],
    monkeypatch: pytest.MonkeyPatch,
) -> list[int]:
    """Point every preview link at the local server, recording requested ports."""
    ports: list[int] = []

    async def preview_link(sandbox_id: str, port: int) -> PreviewLink:
        ports.append(port)
        return PreviewLink(url=received["url"], token=f"tok-{port}")

    monkeypatch.setattr(fake_provider, "get_preview_link", preview_link)
    return ports


async def wait_closed(received: dict[str, Any]) -> list[Any]:
    await asyncio.wait_for(received["closed"].wait(), timeout=2)
    return received["messages"]


class TestTerminalRelay:
    """Tests for TerminalRelay.send."""

    async def test_execute_command(
        self,
        relay: TerminalRelay,
        received: dict[str, Any],
        routed_provider: list[int],
        repositories: list[Repository],
    ) -> None:
        """Test text is typed and executed on the first repository's terminal."""
        response = await relay.send(TerminalCommandRequest(sandbox_id=SANDBOX_ID, command="ls -la"))
        assert response.success is True
        assert response.message == "Sent text to terminal (api)"
        assert response.bytes_sent == len(b"0ls -la\r")
        assert routed_provider == [10000]

        messages = await wait_closed(received)
        assert json.loads(messages[0]) == {"AuthToken": "", "columns": 80, "rows": 24}
        assert messages[1:] == [b'1{"columns":80,"rows":24}', b"0ls -la\r"]
        assert received["tokens"] == ["tok-10000"]

    async def test_key_to_agent_terminal(
        self,
        relay: TerminalRelay,
        received: dict[str, Any],
        routed_provider: list[int],
        repositories: list[Repository],
    ) -> None:
        """Test named keys go to the agent terminal of the chosen repository."""
        request = TerminalCommandRequest(
            sandbox_id=SANDBOX_ID,
            repository_id=repositories[1].id,
            target=TerminalTarget.AGENT,
            type=TerminalInputType.KEY,
            command="Ctrl+C",
        )
        response = await relay.send(request)
        assert response.success is True
        assert routed_provider == [4001]
        messages = await wait_closed(received)
        assert messages[-1] == b"0\x03"

    async def test_paste_is_not_executed(
        self,
        relay: TerminalRelay,
        received: dict[str, Any],
        routed_provider: list[int],
        repositories: list[Repository],
    ) -> None:
        """Test pasted text has no trailing carriage return."""
        request = TerminalCommandRequest(
            sandbox_id=SANDBOX_ID, type=TerminalInputType.PASTE, command="git status"
        )
        assert (await relay.send(request)).success
        messages = await wait_closed(received)
        assert messages[-1] == b"0git status"

    async def test_unreachable_terminal(
        self,
        fake_provider: FakeSandboxProvider,
        relay: TerminalRelay,
        repositories: list[Repository],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a daemon that cannot be reached reports failure without raising."""

        async def dead_link(sandbox_id: str, port: int) -> PreviewLink:
            return PreviewLink(url="http://127.0.0.1:1", token=None)

        monkeypatch.setattr(fake_provider, "get_preview_link", dead_link)
        response = await relay.send(TerminalCommandRequest(sandbox_id=SANDBOX_ID, command="ls"))
        assert response.success is False
        assert "Could not connect" in response.message
        assert response.bytes_sent == 0

    async def test_unknown_repository(
        self, relay: TerminalRelay, repositories: list[Repository]
    ) -> None:
        """Test an unknown repository ID raises SandboxNotFoundError."""
        request = TerminalCommandRequest(
            sandbox_id=SANDBOX_ID, repository_id="nope", command="ls"
        )
        with pytest.raises(SandboxNotFoundError, match="Repository not found"):
            await relay.send(request)

    async def test_unknown_sandbox(self, relay: TerminalRelay) -> None:
        """Test a sandbox without repositories raises SandboxNotFoundError."""
        with pytest.raises(SandboxNotFoundError):
            await relay.send(TerminalCommandRequest(sandbox_id="sb-other", command="ls"))

    async def test_invalid_sandbox_id(self, relay: TerminalRelay) -> None:
        """Test unsafe sandbox IDs are rejected."""
        with pytest.raises(ValidationError):
            await relay.send(TerminalCommandRequest(sandbox_id="a;b", command="ls"))
