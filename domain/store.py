"""The document store interface and its in-process implementation."""

import logging
import threading
from typing import Any, Mapping, Protocol, TypeVar

from domain import errors
from domain.documents import DocumentRegistry
from domain.errors import ErrorKind, StoreError
from domain.query import MISSING, parse
from domain.retry import RetryPolicy


logger = logging.getLogger(__name__)


D = TypeVar("D")


class DocumentStore(Protocol):
    async def create(
        self, item: D, partition_key: str, *, timeout: float | None = None
    ) -> D: ...

    async def get(
        self, id: str, partition_key: str, *, timeout: float | None = None
    ) -> Any | None: ...

    async def query(
        self,
        query: str,
        parameters: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> list[Any]: ...

    async def update(
        self, item: D, id: str, partition_key: str, *, timeout: float | None = None
    ) -> D: ...

    async def delete(
        self, id: str, partition_key: str, *, timeout: float | None = None
    ) -> None: ...

    async def ping(self) -> bool: ...


def check_identity(registry: DocumentRegistry, item: Any, id: str) -> None:
    item_id = registry.id_of(item)
    if item_id != id:
        raise StoreError(
            ErrorKind.PERMANENT,
            f"Document id {item_id!r} does not match target id {id!r}; ids are immutable.",
        )


def check_partition(registry: DocumentRegistry, item: Any, partition_key: str) -> None:
    value = registry.lookup(item, "pk")
    if value is not MISSING and value is not None and value != partition_key:
        raise StoreError(
            ErrorKind.PERMANENT,
            f"Document partition key {value!r} does not match {partition_key!r}.",
        )


class InMemoryDocumentStore:
    """Document store held in process memory.

    Used when no backend is configured and in tests. Documents are keyed by
    (partition key, id) and copied on the way in and out, so callers can
    mutate what they hold freely. The lock is only held while the collection
    is touched, never across a retry wait.
    """

    def __init__(
        self,
        registry: DocumentRegistry | None = None,
        *,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.registry = DocumentRegistry() if registry is None else registry
        self.retry = RetryPolicy() if retry is None else retry
        self._docs: dict[tuple[str, str], Any] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._docs)

    async def create(
        self, item: D, partition_key: str, *, timeout: float | None = None
    ) -> D:
        check_partition(self.registry, item, partition_key)

        async def op() -> D:
            key = (partition_key, self.registry.id_of(item))
            stored = self.registry.copy(item)
            with self._lock:
                if key in self._docs:
                    raise errors.conflict(key[1], partition_key)
                self._docs[key] = stored
            return self.registry.copy(stored)

        return await self.retry.run(op, name="create", timeout=timeout)

    async def get(
        self, id: str, partition_key: str, *, timeout: float | None = None
    ) -> Any | None:
        async def op() -> Any | None:
            with self._lock:
                doc = self._docs.get((partition_key, id))
            return None if doc is None else self.registry.copy(doc)

        return await self.retry.run(op, name="get", timeout=timeout)

    async def query(
        self,
        query: str,
        parameters: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> list[Any]:
        parsed = parse(query)

        async def op() -> list[Any]:
            with self._lock:
                snapshot = list(self._docs.values())
            matches = parsed.apply(snapshot, parameters, self.registry.lookup)
            return [self.registry.copy(doc) for doc in matches]

        return await self.retry.run(op, name="query", timeout=timeout)

    async def update(
        self, item: D, id: str, partition_key: str, *, timeout: float | None = None
    ) -> D:
        check_identity(self.registry, item, id)
        check_partition(self.registry, item, partition_key)

        async def op() -> D:
            stored = self.registry.copy(item)
            with self._lock:
                if (partition_key, id) not in self._docs:
                    raise errors.not_found(id, partition_key)
                self._docs[(partition_key, id)] = stored
            return self.registry.copy(stored)

        return await self.retry.run(op, name="update", timeout=timeout)

    async def delete(
        self, id: str, partition_key: str, *, timeout: float | None = None
    ) -> None:
        async def op() -> None:
            with self._lock:
                removed = self._docs.pop((partition_key, id), None)
            if removed is None:
                logger.debug("delete of absent %s/%s is a no-op", partition_key, id)

        await self.retry.run(op, name="delete", timeout=timeout)

    async def ping(self) -> bool:
        return True
