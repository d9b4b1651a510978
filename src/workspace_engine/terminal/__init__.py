"""Terminal wire protocol and client."""

from workspace_engine.terminal.client import SendResult, TerminalWireClient
from workspace_engine.terminal.protocol import (
    KEY_SEQUENCES,
    ServerFrame,
    ServerFrameType,
    decode_server_frame,
    encode_handshake,
    encode_input,
    encode_key,
    encode_resize,
    websocket_url,
)

__all__ = [
    "KEY_SEQUENCES",
    "SendResult",
    "ServerFrame",
    "ServerFrameType",
    "TerminalWireClient",
    "decode_server_frame",
    "encode_handshake",
    "encode_input",
    "encode_key",
    "encode_resize",
    "websocket_url",
]
