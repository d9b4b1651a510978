"""Repository metadata storage."""

from workspace_engine.storage.repository_store import (
    BaseRepositoryStore,
    InMemoryRepositoryStore,
    RedisRepositoryStore,
    RepositoryStore,
)

__all__ = [
    "BaseRepositoryStore",
    "InMemoryRepositoryStore",
    "RedisRepositoryStore",
    "RepositoryStore",
]
