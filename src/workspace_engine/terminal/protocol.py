"""ttyd terminal wire protocol.

Every frame is a single ASCII op-code byte followed by its payload. The only
exception is the handshake, the first client message, which is bare JSON.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit, urlunsplit

# Client -> daemon
INPUT = b"0"
RESIZE_TERMINAL = b"1"
PAUSE = b"2"
RESUME = b"3"

WEBSOCKET_SUBPROTOCOL = "tty"
WEBSOCKET_PATH = "/ws"

KEY_SEQUENCES: dict[str, str] = {
    "Enter": "\r",
    "Backspace": "\x7f",
    "Tab": "\t",
    "Escape": "\x1b",
    "ArrowUp": "\x1b[A",
    "ArrowDown": "\x1b[B",
    "ArrowRight": "\x1b[C",
    "ArrowLeft": "\x1b[D",
    "Home": "\x1b[H",
    "End": "\x1b[F",
    "Delete": "\x1b[3~",
    "Ctrl+C": "\x03",
    "Ctrl+D": "\x04",
    "Ctrl+L": "\x0c",
}

_COMPACT = (",", ":")


class ServerFrameType(str, Enum):
    """Daemon -> client frame types."""

    OUTPUT = "0"
    SET_WINDOW_TITLE = "1"
    SET_PREFERENCES = "2"
    UNKNOWN = "?"


@dataclass(frozen=True)
class ServerFrame:
    type: ServerFrameType
    payload: bytes

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


def key_sequence(name: str) -> str:
    """Control sequence for a named key.

    Unmapped names fall back to their literal text so a typo degrades into
    typed characters rather than an error.
    """
    sequence = KEY_SEQUENCES.get(name)
    if sequence is not None:
        return sequence
    prefix, _, letter = name.partition("+")
    if prefix.lower() == "ctrl" and len(letter) == 1 and letter.isalpha() and letter.isascii():
        return chr(ord(letter.upper()) - 64)
    return name


def encode_input(text: str) -> bytes:
    return INPUT + text.encode("utf-8")


def encode_key(name: str) -> bytes:
    return encode_input(key_sequence(name))


def encode_resize(columns: int, rows: int) -> bytes:
    if columns <= 0 or rows <= 0:
        raise ValueError(f"Invalid terminal size {columns}x{rows}")
    payload = json.dumps({"columns": columns, "rows": rows}, separators=_COMPACT)
    return RESIZE_TERMINAL + payload.encode("utf-8")


def encode_pause() -> bytes:
    return PAUSE


def encode_resume() -> bytes:
    return RESUME


def encode_handshake(auth_token: str = "", columns: int = 80, rows: int = 24) -> bytes:
    payload = {"AuthToken": auth_token, "columns": columns, "rows": rows}
    return json.dumps(payload, separators=_COMPACT).encode("utf-8")


def decode_server_frame(message: bytes | str) -> ServerFrame:
    data = message.encode("utf-8") if isinstance(message, str) else bytes(message)
    if not data:
        return ServerFrame(ServerFrameType.UNKNOWN, b"")
    try:
        frame_type = ServerFrameType(chr(data[0]))
    except ValueError:
        return ServerFrame(ServerFrameType.UNKNOWN, data)
    return ServerFrame(frame_type, data[1:])


def websocket_url(base_url: str) -> str:
    """Turn a daemon's HTTP(S) URL into its WebSocket endpoint."""
    parts = urlsplit(base_url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    if scheme not in ("ws", "wss"):
        raise ValueError(f"Unsupported terminal URL: {base_url}")
    path = parts.path.rstrip("/")
    if not path.endswith(WEBSOCKET_PATH):
        path += WEBSOCKET_PATH
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))
