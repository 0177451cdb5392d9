"""Account deletion: owned records first, then the balance, then the identity."""

from creditmeter.core.audit import log_event
from creditmeter.core.logging import get_logger
from creditmeter.integrations.identity import IdentityAdmin
from creditmeter.models.balance import UserBalance
from creditmeter.models.ledger_entry import CreditLedgerEntry
from creditmeter.models.purchase import PurchaseRecord
from creditmeter.models.session import GenerationSession
from creditmeter.store.base import LedgerStore, Transaction

log = get_logger(__name__)


class AccountService:
    def __init__(self, store: LedgerStore, identity: IdentityAdmin):
        self.store = store
        self.identity = identity

    async def delete_account(self, uid: str) -> bool:
        purchases = await self.store.delete_where(PurchaseRecord.collection, {"uid": uid})
        sessions = await self.store.delete_where(GenerationSession.collection, {"uid": uid})
        entries = await self.store.delete_where(CreditLedgerEntry.collection, {"uid": uid})

        async def _drop_balance(tx: Transaction) -> None:
            if await tx.get(UserBalance.collection, uid) is not None:
                tx.delete(UserBalance.collection, uid)

        await self.store.run_transaction(_drop_balance)
        await self.identity.delete_user(uid)
        log.info("account_deleted", purchases=purchases, sessions=sessions, ledger_entries=entries)
        await log_event(
            self.store, None, "account_deleted", "user", uid,
            {"purchases": purchases, "sessions": sessions, "ledger_entries": entries},
        )
        return True
