import asyncio
import copy
from typing import Any

from creditmeter.store.base import DELETE, DocumentExistsError, LedgerStore, Transaction, TransactionConflict


class MemoryStore(LedgerStore):
    """In-process store; commits are serialized by a single lock."""

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, tuple[dict[str, Any], int]]] = {}
        self._lock = asyncio.Lock()

    def _collection(self, name: str) -> dict[str, tuple[dict[str, Any], int]]:
        return self._docs.setdefault(name, {})

    async def _read(self, collection: str, doc_id: str) -> tuple[dict[str, Any] | None, int | None]:
        # Yield so concurrent transactions interleave the way they would against a server
        await asyncio.sleep(0)
        entry = self._collection(collection).get(doc_id)
        if entry is None:
            return None, None
        data, version = entry
        return copy.deepcopy(data), version

    async def _commit(self, tx: Transaction) -> None:
        async with self._lock:
            for (collection, doc_id), version in tx.reads.items():
                entry = self._collection(collection).get(doc_id)
                current = entry[1] if entry else None
                if current != version:
                    raise TransactionConflict(f"{collection}/{doc_id}")
            for (collection, doc_id), data in tx.writes.items():
                docs = self._collection(collection)
                if data is DELETE:
                    docs.pop(doc_id, None)
                    continue
                previous = docs.get(doc_id)
                docs[doc_id] = (copy.deepcopy(data), (previous[1] if previous else 0) + 1)

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        async with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise DocumentExistsError(f"{collection}/{doc_id}")
            docs[doc_id] = (copy.deepcopy(data), 1)

    async def find(
        self,
        collection: str,
        where: dict[str, Any],
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = [
            copy.deepcopy(data)
            for data, _ in self._collection(collection).values()
            if all(data.get(k) == v for k, v in where.items())
        ]
        if order_by:
            rows.sort(key=lambda row: row.get(order_by), reverse=descending)
        rows = rows[offset:]
        return rows[:limit] if limit is not None else rows

    async def delete_where(self, collection: str, where: dict[str, Any]) -> int:
        async with self._lock:
            docs = self._collection(collection)
            doomed = [doc_id for doc_id, (data, _) in docs.items() if all(data.get(k) == v for k, v in where.items())]
            for doc_id in doomed:
                del docs[doc_id]
            return len(doomed)
