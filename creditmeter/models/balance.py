from datetime import datetime

from pydantic import Field, computed_field

from creditmeter.models.base import StoredModel


class UserBalance(StoredModel):
    """Credit balance per user; may go negative when a settlement overruns."""

    collection = "balances"

    uid: str
    balance: float = 0.0
    total_purchased: float = 0.0
    total_consumed: float = 0.0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @computed_field
    @property
    def debt(self) -> float:
        return max(0.0, -self.balance)

    @computed_field
    @property
    def has_negative_balance(self) -> bool:
        return self.balance < 0
