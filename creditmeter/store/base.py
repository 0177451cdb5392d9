"""Document store with optimistic multi-document transactions.

Every document carries a version. A transaction records the version of each
document it reads and buffers its writes; commit succeeds only if none of the
read documents changed in the meantime, otherwise the whole callback is re-run.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

from creditmeter.core.config import get_settings
from creditmeter.core.exceptions import AbortedError
from creditmeter.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

Key = tuple[str, str]

DELETE = object()


class DocumentExistsError(Exception):
    """Raised by create() when a document with the same id already exists."""


class TransactionConflict(Exception):
    """A document read inside the transaction changed before commit."""


class Transaction:
    def __init__(self, store: "LedgerStore"):
        self._store = store
        self.reads: dict[Key, int | None] = {}
        self.writes: dict[Key, Any] = {}

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        key = (collection, doc_id)
        if key in self.writes:
            pending = self.writes[key]
            return None if pending is DELETE else dict(pending)
        data, version = await self._store._read(collection, doc_id)
        self.reads.setdefault(key, version)
        return data

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self.writes[(collection, doc_id)] = dict(data)

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes[(collection, doc_id)] = DELETE


class LedgerStore(ABC):
    max_attempts: int = 5

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run fn against a fresh transaction until it commits without conflict."""
        for attempt in range(1, self.max_attempts + 1):
            tx = Transaction(self)
            result = await fn(tx)
            try:
                await self._commit(tx)
                return result
            except TransactionConflict:
                log.info("transaction_conflict", attempt=attempt)
                await asyncio.sleep(random.uniform(0, 0.01 * attempt))
        raise AbortedError("Too much contention on this record, retry later")

    @abstractmethod
    async def _read(self, collection: str, doc_id: str) -> tuple[dict[str, Any] | None, int | None]:
        """Return (data, version) or (None, None) when absent."""
        ...

    @abstractmethod
    async def _commit(self, tx: Transaction) -> None:
        """Apply tx.writes atomically iff every version in tx.reads is unchanged."""
        ...

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        data, _ = await self._read(collection, doc_id)
        return data

    @abstractmethod
    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Insert a new document; raise DocumentExistsError if the id is taken."""
        ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        where: dict[str, Any],
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Equality query on top-level fields."""
        ...

    @abstractmethod
    async def delete_where(self, collection: str, where: dict[str, Any]) -> int:
        ...

    async def close(self) -> None:
        return None


def get_store() -> LedgerStore:
    settings = get_settings()
    if settings.store_backend == "memory":
        from creditmeter.store.memory import MemoryStore
        store: LedgerStore = MemoryStore()
    else:
        from creditmeter.store.mongo import MongoStore
        store = MongoStore(settings.mongodb_uri, settings.mongodb_db_name)
    store.max_attempts = settings.transaction_max_attempts
    return store
