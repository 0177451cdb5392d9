from datetime import datetime
from typing import Literal

from pydantic import Field

from creditmeter.models.base import StoredModel


class PurchaseRecord(StoredModel):
    """One per physical store purchase; `id` is the SHA-256 of the purchase token."""

    collection = "purchases"

    id: str
    uid: str
    product_id: str
    status: Literal["processing", "completed", "failed"] = "processing"
    attempt_id: str  # owner of the current processing claim
    purchase_token_encrypted: str = ""  # for consumption recovery
    attempts: int = 1
    credits_granted: float = 0.0
    balance_after: float | None = None
    consume_pending: bool = False
    order_id: str | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None
