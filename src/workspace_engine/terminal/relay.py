"""One-shot delivery of input to a repository's terminal daemon."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from workspace_engine.config import settings
from workspace_engine.errors import RemoteCommandError, SandboxNotFoundError
from workspace_engine.models.repository import Repository, ServiceKind
from workspace_engine.models.terminal import (
    TerminalCommandRequest,
    TerminalCommandResponse,
    TerminalInputType,
    TerminalTarget,
)
from workspace_engine.terminal.client import SendResult, TerminalWireClient
from workspace_engine.validation import validate_sandbox_id

if TYPE_CHECKING:
    from workspace_engine.providers.base import SandboxProvider
    from workspace_engine.storage.repository_store import RepositoryStore

logger = structlog.get_logger()

TARGET_SERVICES = {
    TerminalTarget.TERMINAL: ServiceKind.TERMINAL,
    TerminalTarget.AGENT: ServiceKind.AGENT,
}


class TerminalRelay:
    """Opens a short-lived wire client, sends one input and closes it."""

    def __init__(
        self,
        provider: SandboxProvider,
        store: RepositoryStore,
        columns: int | None = None,
        rows: int | None = None,
        connect_timeout: float | None = None,
    ) -> None:
        self._provider = provider
        self._store = store
        self._columns = columns or settings.terminal_columns
        self._rows = rows or settings.terminal_rows
        self._connect_timeout = connect_timeout or settings.terminal_connect_timeout

    async def _resolve_repository(self, sandbox_id: str, repository_id: str | None) -> Repository:
        repositories = await self._store.get_repositories(sandbox_id)
        if not repositories:
            raise SandboxNotFoundError(
                sandbox_id, f"No repositories registered for workspace {sandbox_id}"
            )
        if repository_id is None:
            return repositories[0]
        for repository in repositories:
            if repository.id == repository_id:
                return repository
        raise SandboxNotFoundError(sandbox_id, f"Repository not found: {repository_id}")

    async def send(self, request: TerminalCommandRequest) -> TerminalCommandResponse:
        """Deliver one command, key or paste to a terminal.

        Raises:
            ValidationError: If the sandbox ID is malformed
            SandboxNotFoundError: If the sandbox or repository is unknown
        """
        validate_sandbox_id(request.sandbox_id)
        repository = await self._resolve_repository(request.sandbox_id, request.repository_id)
        port = repository.ports.for_kind(TARGET_SERVICES[request.target])

        try:
            link = await self._provider.get_preview_link(request.sandbox_id, port)
            async with TerminalWireClient(
                link.url,
                preview_token=link.token,
                columns=self._columns,
                rows=self._rows,
                connect_timeout=self._connect_timeout,
            ) as client:
                await client.resize(self._columns, self._rows)
                result = await self._deliver(client, request)
        except RemoteCommandError as e:
            return TerminalCommandResponse(success=False, message=str(e))

        logger.info(
            "Terminal input relayed",
            sandbox_id=request.sandbox_id,
            repository=repository.name,
            target=request.target.value,
            input_type=request.type.value,
            success=result.success,
        )
        if not result.success:
            return TerminalCommandResponse(
                success=False, message=result.error or "Terminal send failed"
            )
        return TerminalCommandResponse(
            success=True,
            message=f"Sent {request.type.value} to {request.target.value} ({repository.name})",
            bytes_sent=result.bytes_sent,
        )

    @staticmethod
    async def _deliver(client: TerminalWireClient, request: TerminalCommandRequest) -> SendResult:
        if request.type == TerminalInputType.KEY:
            return await client.send_key(request.command)
        if request.type == TerminalInputType.PASTE:
            return await client.paste(request.command)
        return await client.execute(request.command)
