"""
Cross-run key-value store.

Nodes receive the executor's store through `NodeContext.store` and may use
it to remember facts across runs (user preferences, cached lookups, ...).
The engine passes it through untouched; it is never part of run state or
checkpoints.

Items are addressed by a namespace tuple plus a key:

    await context.store.put(("users", user_id), "preferences", {"tone": "formal"})
    prefs = await context.store.get(("users", user_id), "preferences")
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

Namespace = tuple[str, ...]


@dataclass
class StoreItem:
    """A stored value with its address and timestamps."""

    namespace: Namespace
    key: str
    value: dict[str, Any]
    created_at: str
    updated_at: str


class KeyValueStore(ABC):
    """Abstract cross-run store."""

    @abstractmethod
    async def get(self, namespace: Namespace, key: str) -> StoreItem | None:
        """Return the item at (namespace, key), or None."""

    @abstractmethod
    async def put(self, namespace: Namespace, key: str, value: dict[str, Any]) -> None:
        """Create or replace the item at (namespace, key)."""

    @abstractmethod
    async def delete(self, namespace: Namespace, key: str) -> bool:
        """Remove the item at (namespace, key). Returns False if absent."""

    @abstractmethod
    async def search(
        self,
        namespace_prefix: Namespace,
        filter: dict[str, Any] | None = None,
        limit: int = 10,
    ) -> list[StoreItem]:
        """
        List items whose namespace starts with `namespace_prefix`.

        Args:
            namespace_prefix: Leading namespace components to match
            filter: Exact-match constraints on top-level value keys
            limit: Maximum number of items to return

        Returns:
            Matching items, most recently updated first
        """


class InMemoryKeyValueStore(KeyValueStore):
    """Dict-backed store for tests and single-process use."""

    def __init__(self):
        self._items: dict[tuple[Namespace, str], StoreItem] = {}
        self._lock = asyncio.Lock()

    async def get(self, namespace: Namespace, key: str) -> StoreItem | None:
        item = self._items.get((tuple(namespace), key))
        return copy.deepcopy(item) if item else None

    async def put(self, namespace: Namespace, key: str, value: dict[str, Any]) -> None:
        namespace = tuple(namespace)
        now = datetime.now().isoformat()
        async with self._lock:
            existing = self._items.get((namespace, key))
            self._items[(namespace, key)] = StoreItem(
                namespace=namespace,
                key=key,
                value=copy.deepcopy(value),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )

    async def delete(self, namespace: Namespace, key: str) -> bool:
        async with self._lock:
            return self._items.pop((tuple(namespace), key), None) is not None

    async def search(
        self,
        namespace_prefix: Namespace,
        filter: dict[str, Any] | None = None,
        limit: int = 10,
    ) -> list[StoreItem]:
        prefix = tuple(namespace_prefix)
        matches = [
            item
            for (namespace, _), item in self._items.items()
            if namespace[: len(prefix)] == prefix
            and all(item.value.get(k) == v for k, v in (filter or {}).items())
        ]
        matches.sort(key=lambda item: item.updated_at, reverse=True)
        return [copy.deepcopy(item) for item in matches[:limit]]
