"""Persistent WebSocket client for a running ttyd terminal daemon.

Sends never raise and never retry: terminal input is not idempotent, so a
resend could run a shell command twice. A failed send is reported in its
SendResult and reconnecting is up to the caller.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from types import TracebackType

import structlog
import websockets
from websockets.asyncio.client import ClientConnection, connect
from websockets.protocol import State
from websockets.typing import Subprotocol

from workspace_engine.errors import RemoteCommandError
from workspace_engine.terminal import protocol
from workspace_engine.terminal.protocol import ServerFrameType

logger = structlog.get_logger()

PREVIEW_TOKEN_HEADER = "x-daytona-preview-token"

OutputCallback = Callable[[bytes], Awaitable[None] | None]


@dataclass(frozen=True)
class SendResult:
    success: bool
    error: str | None = None
    bytes_sent: int = 0


class TerminalWireClient:
    """One socket, owned by one logical terminal session.

    Use as an async context manager, or call connect() and close() yourself.
    """

    def __init__(
        self,
        url: str,
        preview_token: str | None = None,
        columns: int = 80,
        rows: int = 24,
        connect_timeout: float = 5.0,
        on_output: OutputCallback | None = None,
    ) -> None:
        self._url = protocol.websocket_url(url)
        self._preview_token = preview_token
        self.columns = columns
        self.rows = rows
        self._connect_timeout = connect_timeout
        self._on_output = on_output
        self._ws: ClientConnection | None = None
        self._reader: asyncio.Task[None] | None = None
        self.title: str | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def connect(self) -> None:
        """Open the socket and perform the ttyd handshake.

        Raises:
            RemoteCommandError: If the daemon cannot be reached
        """
        if self.is_open:
            return

        headers = {PREVIEW_TOKEN_HEADER: self._preview_token} if self._preview_token else None
        try:
            self._ws = await connect(
                self._url,
                subprotocols=[Subprotocol(protocol.WEBSOCKET_SUBPROTOCOL)],
                additional_headers=headers,
                open_timeout=self._connect_timeout,
            )
            await self._ws.send(protocol.encode_handshake("", self.columns, self.rows))
        except (OSError, TimeoutError, websockets.WebSocketException) as e:
            self._ws = None
            logger.warning("Terminal connection failed", url=self._url, error=str(e))
            raise RemoteCommandError(f"Could not connect to terminal at {self._url}: {e}") from e

        self._reader = asyncio.create_task(self._read_loop(self._ws))
        logger.debug("Terminal connected", url=self._url)

    async def _read_loop(self, ws: ClientConnection) -> None:
        """Hand terminal output to the callback. Output is not interpreted."""
        try:
            async for message in ws:
                frame = protocol.decode_server_frame(message)
                if frame.type == ServerFrameType.OUTPUT:
                    await self._emit(frame.payload)
                elif frame.type == ServerFrameType.SET_WINDOW_TITLE:
                    self.title = frame.text
        except websockets.ConnectionClosed:
            pass

    async def _emit(self, payload: bytes) -> None:
        if self._on_output is None:
            return
        try:
            result = self._on_output(payload)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Terminal output callback failed", url=self._url)

    async def _send(self, frame: bytes) -> SendResult:
        if self._ws is None or not self.is_open:
            return SendResult(success=False, error="Terminal socket is not open")
        try:
            await self._ws.send(frame)
        except websockets.ConnectionClosed as e:
            return SendResult(success=False, error=f"Terminal socket closed: {e}")
        return SendResult(success=True, bytes_sent=len(frame))

    async def send_text(self, text: str) -> SendResult:
        return await self._send(protocol.encode_input(text))

    async def execute(self, command: str) -> SendResult:
        """Type a command and press Enter."""
        return await self.send_text(command + "\r")

    async def paste(self, text: str) -> SendResult:
        """Type text without executing it."""
        return await self.send_text(text)

    async def send_key(self, name: str) -> SendResult:
        return await self._send(protocol.encode_key(name))

    async def resize(self, columns: int, rows: int) -> SendResult:
        try:
            frame = protocol.encode_resize(columns, rows)
        except ValueError as e:
            return SendResult(success=False, error=str(e))
        result = await self._send(frame)
        if result.success:
            self.columns, self.rows = columns, rows
        return result

    async def pause(self) -> SendResult:
        return await self._send(protocol.encode_pause())

    async def resume(self) -> SendResult:
        return await self._send(protocol.encode_resume())

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(websockets.WebSocketException, OSError):
                await ws.close()
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None

    async def __aenter__(self) -> TerminalWireClient:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()
