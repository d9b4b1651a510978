"""Repository metadata storage.

One document per sandbox holds its repository list, each entry carrying its
slot and persisted port triple. Records are repaired on load so that entries
written before a service existed gain its port without moving the others.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Protocol

import redis.asyncio as redis
import structlog

from workspace_engine.managers.ports import infer_slot, next_slot, ports_for_slot, repair_ports
from workspace_engine.models.repository import Repository, SourceType
from workspace_engine.validation import sanitize_repository_name, validate_repository_name

logger = structlog.get_logger()


def _repositories_key(sandbox_id: str) -> str:
    return f"workspace:repositories:{sandbox_id}"


def load_repository(raw: dict[str, Any], index: int) -> Repository:
    """Build a Repository from a stored record, repairing legacy port data."""
    data = dict(raw)
    ports = data.get("ports")
    slot = data.get("slot")
    if slot is None:
        slot = infer_slot(ports if isinstance(ports, dict) else None, fallback=index)
    data["slot"] = slot
    data["ports"] = repair_ports(ports, slot)
    # Legacy records stored links under "urls"
    if "serviceUrls" not in data and "service_urls" not in data and "urls" in data:
        data["service_urls"] = data.pop("urls")
    return Repository.model_validate(data)


def dump_repository(repository: Repository) -> dict[str, Any]:
    return repository.model_dump(mode="json", by_alias=True)


class RepositoryStore(Protocol):
    async def get_repositories(self, sandbox_id: str) -> list[Repository] | None: ...

    async def save_repositories(self, sandbox_id: str, repositories: list[Repository]) -> None: ...

    async def add_repository(
        self,
        sandbox_id: str,
        name: str,
        source_type: SourceType = SourceType.DEFAULT,
        url: str | None = None,
    ) -> Repository: ...

    async def update_service_links(
        self,
        sandbox_id: str,
        links: dict[str, dict[str, tuple[str, str | None]]],
    ) -> None: ...

    async def delete_sandbox(self, sandbox_id: str) -> None: ...


class BaseRepositoryStore(ABC):
    """Shared record handling on top of a raw document load/save."""

    def __init__(self) -> None:
        # Serializes read-modify-write cycles per sandbox within this process
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @abstractmethod
    async def _load_raw(self, sandbox_id: str) -> list[dict[str, Any]] | None:
        """The stored records, or None if the sandbox has no document."""

    @abstractmethod
    async def _save_raw(self, sandbox_id: str, records: list[dict[str, Any]]) -> None: ...

    @abstractmethod
    async def _delete_raw(self, sandbox_id: str) -> None: ...

    async def get_repositories(self, sandbox_id: str) -> list[Repository] | None:
        """Repositories of a sandbox, or None if the sandbox has no record."""
        records = await self._load_raw(sandbox_id)
        if records is None:
            return None
        repositories = []
        for index, raw in enumerate(records):
            try:
                repositories.append(load_repository(raw, index))
            except Exception:
                logger.exception(
                    "Skipping undecodable repository record",
                    sandbox_id=sandbox_id,
                    index=index,
                )
        return repositories

    async def save_repositories(self, sandbox_id: str, repositories: list[Repository]) -> None:
        slots = [r.slot for r in repositories]
        if len(slots) != len(set(slots)):
            raise ValueError(f"Duplicate repository slots in sandbox {sandbox_id}")
        await self._save_raw(sandbox_id, [dump_repository(r) for r in repositories])

    async def add_repository(
        self,
        sandbox_id: str,
        name: str,
        source_type: SourceType = SourceType.DEFAULT,
        url: str | None = None,
    ) -> Repository:
        """Register a repository under the next free slot."""
        async with self._locks[sandbox_id]:
            repositories = await self.get_repositories(sandbox_id) or []
            safe_name = validate_repository_name(sanitize_repository_name(name))
            if any(r.name == safe_name for r in repositories):
                raise ValueError(f"Repository {safe_name} already exists in sandbox {sandbox_id}")

            slot = next_slot(r.slot for r in repositories)
            repository = Repository(
                id=uuid.uuid4().hex[:12],
                name=safe_name,
                source_type=source_type,
                url=url,
                slot=slot,
                ports=ports_for_slot(slot),
            )
            repositories.append(repository)
            await self.save_repositories(sandbox_id, repositories)

        logger.info(
            "Repository registered",
            sandbox_id=sandbox_id,
            repository=safe_name,
            slot=slot,
            ports=repository.ports.as_list(),
        )
        return repository

    async def update_service_links(
        self,
        sandbox_id: str,
        links: dict[str, dict[str, tuple[str, str | None]]],
    ) -> None:
        """Merge preview links into repository records.

        Args:
            sandbox_id: Sandbox owning the repositories
            links: repository id -> service kind -> (url, token)
        """
        if not links:
            return
        async with self._locks[sandbox_id]:
            repositories = await self.get_repositories(sandbox_id)
            if repositories is None:
                return
            updated = []
            for repository in repositories:
                service_links = links.get(repository.id)
                if not service_links:
                    updated.append(repository)
                    continue
                urls = dict(repository.service_urls)
                tokens = dict(repository.tokens)
                for kind, (link_url, token) in service_links.items():
                    urls[kind] = link_url
                    if token:
                        tokens[kind] = token
                updated.append(repository.model_copy(update={"service_urls": urls, "tokens": tokens}))
            await self.save_repositories(sandbox_id, updated)

    async def delete_sandbox(self, sandbox_id: str) -> None:
        await self._delete_raw(sandbox_id)
        self._locks.pop(sandbox_id, None)


class InMemoryRepositoryStore(BaseRepositoryStore):
    """Process-local store for tests and local development."""

    def __init__(self, documents: dict[str, list[dict[str, Any]]] | None = None) -> None:
        super().__init__()
        self._documents: dict[str, list[dict[str, Any]]] = dict(documents or {})

    async def _load_raw(self, sandbox_id: str) -> list[dict[str, Any]] | None:
        records = self._documents.get(sandbox_id)
        return [dict(r) for r in records] if records is not None else None

    async def _save_raw(self, sandbox_id: str, records: list[dict[str, Any]]) -> None:
        self._documents[sandbox_id] = records

    async def _delete_raw(self, sandbox_id: str) -> None:
        self._documents.pop(sandbox_id, None)


class RedisRepositoryStore(BaseRepositoryStore):
    """Redis-backed store, one JSON document per sandbox."""

    def __init__(self, redis_url: str, client: Any | None = None) -> None:
        super().__init__()
        self._redis_url = redis_url
        self._client: Any = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
            logger.info("Connected to Redis", url=self._redis_url)
        return self._client

    async def _load_raw(self, sandbox_id: str) -> list[dict[str, Any]] | None:
        data = await self._get_client().get(_repositories_key(sandbox_id))
        if not data:
            return None
        try:
            records = json.loads(data)
        except json.JSONDecodeError:
            logger.exception("Failed to decode repositories from Redis", sandbox_id=sandbox_id)
            return None
        if isinstance(records, dict):
            records = records.get("repositories", [])
        return [r for r in records if isinstance(r, dict)]

    async def _save_raw(self, sandbox_id: str, records: list[dict[str, Any]]) -> None:
        await self._get_client().set(_repositories_key(sandbox_id), json.dumps(records))

    async def _delete_raw(self, sandbox_id: str) -> None:
        await self._get_client().delete(_repositories_key(sandbox_id))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
