"""Terminal command relay route."""

from typing import Annotated

from fastapi import APIRouter, Depends

from workspace_engine.deps import get_relay, to_http_exception, verify_internal_auth
from workspace_engine.models.terminal import TerminalCommandRequest, TerminalCommandResponse
from workspace_engine.terminal.relay import TerminalRelay

router = APIRouter(tags=["terminal"], dependencies=[Depends(verify_internal_auth)])


@router.post("/send-terminal-command", response_model=TerminalCommandResponse)
async def send_terminal_command(
    request: TerminalCommandRequest,
    relay: Annotated[TerminalRelay, Depends(get_relay)],
) -> TerminalCommandResponse:
    """Type a command, key or paste into a repository's terminal.

    Delivery is best effort and never retried; `success` reports whether the
    frame was written to the socket.
    """
    try:
        return await relay.send(request)
    except Exception as e:
        raise to_http_exception(e, request.sandbox_id) from e
