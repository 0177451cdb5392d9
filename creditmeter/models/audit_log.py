import uuid
from datetime import datetime
from typing import Any

from pydantic import Field

from creditmeter.models.base import StoredModel


class AuditLog(StoredModel):
    collection = "audit_logs"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    uid: str | None = None  # optional for system events
    event_type: str
    entity_type: str
    entity_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
