"""Audit log for purchase and account events."""

from typing import Any

from creditmeter.models.audit_log import AuditLog
from creditmeter.store.base import LedgerStore


async def log_event(
    store: LedgerStore,
    uid: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs collection."""
    entry = AuditLog(
        uid=uid,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    )
    await store.create(AuditLog.collection, entry.id, entry.to_doc())
