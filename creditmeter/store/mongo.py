"""MongoDB backend. Multi-document commits need a replica set (transactions)."""

from typing import Any

import certifi
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import DuplicateKeyError, OperationFailure

from creditmeter.store.base import DELETE, DocumentExistsError, LedgerStore, Transaction, TransactionConflict

VERSION_FIELD = "_v"
_UNREAD = object()


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def _strip(doc: dict[str, Any] | None) -> dict[str, Any] | None:
    if doc is None:
        return None
    doc = dict(doc)
    doc.pop("_id", None)
    doc.pop(VERSION_FIELD, None)
    return doc


class MongoStore(LedgerStore):
    def __init__(self, uri: str, db_name: str) -> None:
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs: dict[str, Any] = {}
        if _use_tls(uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        self._client = AsyncIOMotorClient(uri, **kwargs)
        self._db = self._client[db_name]

    async def _read(self, collection: str, doc_id: str) -> tuple[dict[str, Any] | None, int | None]:
        doc = await self._db[collection].find_one({"_id": doc_id})
        if doc is None:
            return None, None
        return _strip(doc), doc.get(VERSION_FIELD, 0)

    async def _commit(self, tx: Transaction) -> None:
        if not tx.writes:
            return
        async with await self._client.start_session() as session:
            try:
                async with session.start_transaction():
                    await self._apply(tx, session)
            except DuplicateKeyError as e:
                raise TransactionConflict(str(e)) from e
            except OperationFailure as e:
                if e.has_error_label("TransientTransactionError"):
                    raise TransactionConflict(str(e)) from e
                raise

    async def _apply(self, tx: Transaction, session) -> None:
        for (collection, doc_id), version in tx.reads.items():
            if (collection, doc_id) in tx.writes:
                continue
            current = await self._db[collection].find_one({"_id": doc_id}, {VERSION_FIELD: 1}, session=session)
            if (current.get(VERSION_FIELD, 0) if current else None) != version:
                raise TransactionConflict(f"{collection}/{doc_id}")
        for (collection, doc_id), data in tx.writes.items():
            coll = self._db[collection]
            expected = tx.reads.get((collection, doc_id), _UNREAD)
            if data is DELETE:
                query: dict[str, Any] = {"_id": doc_id}
                if expected is not None and expected is not _UNREAD:
                    query[VERSION_FIELD] = expected
                result = await coll.delete_one(query, session=session)
                if expected is not None and expected is not _UNREAD and result.deleted_count == 0:
                    raise TransactionConflict(f"{collection}/{doc_id}")
                continue
            if expected is None:
                await coll.insert_one({**data, "_id": doc_id, VERSION_FIELD: 1}, session=session)
            elif expected is _UNREAD:
                await coll.update_one(
                    {"_id": doc_id},
                    {"$set": data, "$inc": {VERSION_FIELD: 1}},
                    upsert=True,
                    session=session,
                )
            else:
                result = await coll.replace_one(
                    {"_id": doc_id, VERSION_FIELD: expected},
                    {**data, VERSION_FIELD: expected + 1},
                    session=session,
                )
                if result.matched_count == 0:
                    raise TransactionConflict(f"{collection}/{doc_id}")

    async def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        try:
            await self._db[collection].insert_one({**data, "_id": doc_id, VERSION_FIELD: 1})
        except DuplicateKeyError as e:
            raise DocumentExistsError(f"{collection}/{doc_id}") from e

    async def find(
        self,
        collection: str,
        where: dict[str, Any],
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        cursor = self._db[collection].find(where)
        if order_by:
            cursor = cursor.sort(order_by, -1 if descending else 1)
        if offset:
            cursor = cursor.skip(offset)
        if limit is not None:
            cursor = cursor.limit(limit)
        return [_strip(doc) async for doc in cursor]

    async def delete_where(self, collection: str, where: dict[str, Any]) -> int:
        result = await self._db[collection].delete_many(where)
        return result.deleted_count

    async def close(self) -> None:
        self._client.close()
