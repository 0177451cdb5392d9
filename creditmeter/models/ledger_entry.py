import uuid
from datetime import datetime
from typing import Literal

from pydantic import Field

from creditmeter.models.base import StoredModel

LedgerReason = Literal["reserve", "settle", "rollback", "release", "purchase"]


class CreditLedgerEntry(StoredModel):
    collection = "credit_ledger"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    uid: str
    amount: float  # positive = credit, negative = debit
    balance_after: float
    reason: LedgerReason
    action: str | None = None
    session_id: str | None = None
    reference_id: str | None = None  # purchase record id
    created_at: datetime = Field(default_factory=datetime.utcnow)
