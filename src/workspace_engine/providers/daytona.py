"""Daytona-backed sandbox provider.

The Daytona SDK is synchronous; every call runs in a worker thread
so the event loop is never blocked by a slow sandbox. The SDK ships in the
`daytona` extra and is only imported when no client is injected.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from workspace_engine.errors import (
    MissingCredentialsError,
    RemoteCommandError,
    SandboxNotFoundError,
)
from workspace_engine.providers.base import ExecResult, PreviewLink

logger = structlog.get_logger()

DEFAULT_LIFECYCLE_TIMEOUT = 60
DEFAULT_ROOT_DIR = "/home/daytona"

_NOT_FOUND_MARKERS = ("not found", "404", "does not exist")


def _is_not_found(error: Exception) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _NOT_FOUND_MARKERS)


class DaytonaProvider:
    """SandboxProvider implementation on top of the Daytona SDK."""

    def __init__(
        self,
        api_key: str,
        api_url: str | None = None,
        target: str | None = None,
        client: Any | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise MissingCredentialsError("DAYTONA_API_KEY is not configured")
            from daytona_sdk import Daytona, DaytonaConfig

            config_kwargs: dict[str, Any] = {"api_key": api_key}
            if api_url:
                config_kwargs["api_url"] = api_url
            if target:
                config_kwargs["target"] = target
            client = Daytona(DaytonaConfig(**config_kwargs))
        # External Daytona SDK client - Any type since it comes from the SDK
        self._client: Any = client
        self._sandboxes: dict[str, Any] = {}

    async def _run_sync(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous SDK call in a worker thread."""
        return await asyncio.to_thread(func, *args, **kwargs)

    async def _call(
        self,
        sandbox_id: str,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Run an SDK call, mapping SDK failures onto the engine's error taxonomy."""
        try:
            return await self._run_sync(func, *args, **kwargs)
        except (SandboxNotFoundError, RemoteCommandError):
            raise
        except Exception as e:
            if _is_not_found(e):
                self._sandboxes.pop(sandbox_id, None)
                raise SandboxNotFoundError(sandbox_id) from e
            logger.warning(
                "Daytona call failed",
                sandbox_id=sandbox_id,
                operation=operation,
                error=str(e),
            )
            raise RemoteCommandError(f"{operation} failed for sandbox {sandbox_id}: {e}") from e

    async def _fetch(self, sandbox_id: str) -> Any:
        sandbox = await self._call(sandbox_id, "get", self._client.get, sandbox_id)
        if sandbox is None:
            raise SandboxNotFoundError(sandbox_id)
        self._sandboxes[sandbox_id] = sandbox
        return sandbox

    async def _sandbox(self, sandbox_id: str) -> Any:
        cached = self._sandboxes.get(sandbox_id)
        if cached is not None:
            return cached
        return await self._fetch(sandbox_id)

    async def create(self, labels: dict[str, str] | None = None) -> str:
        sandbox = await self._call("", "create", self._client.create)
        if labels:
            await self._call(sandbox.id, "set_labels", sandbox.set_labels, labels)
        self._sandboxes[sandbox.id] = sandbox
        logger.info("Sandbox created", sandbox_id=sandbox.id)
        return str(sandbox.id)

    async def get_state(self, sandbox_id: str) -> str:
        # Always refetch: the cached object's state goes stale
        sandbox = await self._fetch(sandbox_id)
        state = getattr(sandbox, "state", None)
        if state is None:
            return "unknown"
        return str(state.value if hasattr(state, "value") else state)

    async def start(self, sandbox_id: str, timeout: float | None = None) -> None:
        sandbox = await self._sandbox(sandbox_id)
        logger.info("Starting sandbox", sandbox_id=sandbox_id)
        await self._call(
            sandbox_id, "start", sandbox.start, timeout=timeout or DEFAULT_LIFECYCLE_TIMEOUT
        )

    async def stop(self, sandbox_id: str, timeout: float | None = None) -> None:
        sandbox = await self._sandbox(sandbox_id)
        logger.info("Stopping sandbox", sandbox_id=sandbox_id)
        await self._call(
            sandbox_id, "stop", sandbox.stop, timeout=timeout or DEFAULT_LIFECYCLE_TIMEOUT
        )

    async def delete(self, sandbox_id: str) -> None:
        sandbox = await self._sandbox(sandbox_id)
        await self._call(sandbox_id, "delete", self._client.delete, sandbox)
        self._sandboxes.pop(sandbox_id, None)
        logger.info("Sandbox deleted", sandbox_id=sandbox_id)

    async def execute_command(
        self,
        sandbox_id: str,
        command: str,
        cwd: str | None = None,
        timeout: int | None = None,
    ) -> ExecResult:
        sandbox = await self._sandbox(sandbox_id)
        response = await self._call(
            sandbox_id, "exec", sandbox.process.exec, command, cwd=cwd, timeout=timeout
        )
        return ExecResult(
            exit_code=int(getattr(response, "exit_code", 1) or 0),
            stdout=str(getattr(response, "result", "") or ""),
        )

    async def get_preview_link(self, sandbox_id: str, port: int) -> PreviewLink:
        sandbox = await self._sandbox(sandbox_id)
        link = await self._call(sandbox_id, "preview_link", sandbox.get_preview_link, port)
        return PreviewLink(url=str(link.url), token=getattr(link, "token", None))

    async def get_root_dir(self, sandbox_id: str) -> str:
        sandbox = await self._sandbox(sandbox_id)
        root = await self._call(sandbox_id, "work_dir", sandbox.get_work_dir)
        return str(root or DEFAULT_ROOT_DIR).rstrip("/") or "/"
