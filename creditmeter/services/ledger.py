"""Credit ledger: reserve, settle and roll back metered actions atomically.

Each public mutation is one store transaction over the caller's balance
record and one generation session record, so a session never observes a torn
update. Concurrent calls on the same session conflict at commit and re-run.
"""

from dataclasses import dataclass
from datetime import datetime

from creditmeter.core.exceptions import ResourceExhaustedError
from creditmeter.core.logging import get_logger
from creditmeter.models.balance import UserBalance
from creditmeter.models.ledger_entry import CreditLedgerEntry
from creditmeter.models.session import GenerationSession
from creditmeter.services.pair_billing import PairBillingStateMachine, is_first_phase, pair_of
from creditmeter.services.pricing import (
    CREDIT_PRECISION_DECIMALS,
    CreditQuote,
    PricingCurve,
    TokenUsage,
    round_credits,
)
from creditmeter.store.base import LedgerStore, Transaction

log = get_logger(__name__)


@dataclass(frozen=True)
class ReserveResult:
    charged: float
    balance: float


@dataclass(frozen=True)
class SettleResult:
    additional_charged: float
    balance: float
    pair_quote: CreditQuote | None
    usage_cost_usd: float


@dataclass(frozen=True)
class RollbackResult:
    refunded: float
    balance: float
    restored: bool


async def load_balance(tx: Transaction, uid: str) -> UserBalance:
    doc = await tx.get(UserBalance.collection, uid)
    return UserBalance.from_doc(doc) if doc else UserBalance(uid=uid)


def apply_credit_delta(
    tx: Transaction,
    balance: UserBalance,
    amount: float,
    reason: str,
    *,
    action: str | None = None,
    session_id: str | None = None,
    reference_id: str | None = None,
    decimals: int = CREDIT_PRECISION_DECIMALS,
) -> None:
    """Move `amount` credits (positive credits the user) and append the ledger entry."""
    balance.balance = round_credits(balance.balance + amount, decimals)
    if reason == "purchase":
        balance.total_purchased = round_credits(balance.total_purchased + amount, decimals)
    else:
        balance.total_consumed = round_credits(balance.total_consumed - amount, decimals)
    balance.updated_at = datetime.utcnow()
    tx.set(UserBalance.collection, balance.uid, balance.to_doc())
    if amount:
        entry = CreditLedgerEntry(
            uid=balance.uid,
            amount=round_credits(amount, decimals),
            balance_after=balance.balance,
            reason=reason,
            action=action,
            session_id=session_id,
            reference_id=reference_id,
        )
        tx.set(CreditLedgerEntry.collection, entry.id, entry.to_doc())


class CreditLedger:
    def __init__(self, store: LedgerStore, pricing: PricingCurve):
        self.store = store
        self.pricing = pricing
        self.pairs = PairBillingStateMachine(pricing)

    async def _load_session(self, tx: Transaction, uid: str, session_id: str) -> GenerationSession:
        doc = await tx.get(GenerationSession.collection, GenerationSession.doc_id(uid, session_id))
        return GenerationSession.from_doc(doc) if doc else GenerationSession.new(uid, session_id)

    @staticmethod
    def _save_session(tx: Transaction, session: GenerationSession) -> None:
        session.updated_at = datetime.utcnow()
        tx.set(GenerationSession.collection, session.id, session.to_doc())

    async def get_balance(self, uid: str) -> UserBalance:
        """Return the balance record, creating a zero balance on first read."""
        doc = await self.store.get(UserBalance.collection, uid)
        if doc:
            return UserBalance.from_doc(doc)

        async def _create(tx: Transaction) -> UserBalance:
            balance = await load_balance(tx, uid)
            tx.set(UserBalance.collection, uid, balance.to_doc())
            return balance

        return await self.store.run_transaction(_create)

    async def get_session(self, uid: str, session_id: str) -> GenerationSession | None:
        doc = await self.store.get(GenerationSession.collection, GenerationSession.doc_id(uid, session_id))
        return GenerationSession.from_doc(doc) if doc else None

    async def reserve(self, uid: str, session_id: str, action: str, target_credits: float) -> ReserveResult:
        """Debit the incremental reservation for `action`; no state changes on failure."""

        async def _reserve(tx: Transaction) -> ReserveResult:
            session = await self._load_session(tx, uid, session_id)
            balance = await load_balance(tx, uid)
            pair = pair_of(action)
            reservation = self.pairs.reserve(action, session.pair(pair), target_credits)
            if reservation.charged > 0 and balance.balance < reservation.charged:
                raise ResourceExhaustedError(
                    f"Insufficient credits. Balance: {balance.balance}, required: {reservation.charged}",
                    details={"balance": balance.balance, "required": reservation.charged},
                )
            session.set_pair(pair, reservation.state)
            self._save_session(tx, session)
            apply_credit_delta(
                tx,
                balance,
                -reservation.charged,
                "reserve",
                action=action,
                session_id=session_id,
                decimals=self.pricing.decimals,
            )
            return ReserveResult(charged=reservation.charged, balance=balance.balance)

        result = await self.store.run_transaction(_reserve)
        log.info("credits_reserved", action=action, session_id=session_id, charged=result.charged, balance=result.balance)
        return result

    async def settle(self, uid: str, session_id: str, action: str, usage: TokenUsage) -> SettleResult:
        """Record the true usage of `action`; the second phase bills the whole pair."""
        cost = self.pricing.cost_usd(usage)

        async def _settle(tx: Transaction) -> SettleResult:
            session = await self._load_session(tx, uid, session_id)
            balance = await load_balance(tx, uid)
            pair = pair_of(action)
            settlement = self.pairs.settle(action, session.pair(pair), cost, usage.total)
            if not settlement.recorded:
                log.warning("settle_without_reservation", action=action, session_id=session_id)
            session.set_pair(pair, settlement.state)
            session.action_count += 1
            session.total_input_tokens += usage.input_tokens
            session.total_output_tokens += usage.output_tokens
            session.total_thought_tokens += usage.thought_tokens
            session.last_action = action
            self._save_session(tx, session)
            if settlement.delta:
                # Overruns are charged even into a negative balance: the work already happened
                apply_credit_delta(
                    tx,
                    balance,
                    -settlement.delta,
                    "settle",
                    action=action,
                    session_id=session_id,
                    decimals=self.pricing.decimals,
                )
            return SettleResult(
                additional_charged=settlement.delta,
                balance=balance.balance,
                pair_quote=settlement.pair_quote,
                usage_cost_usd=cost,
            )

        result = await self.store.run_transaction(_settle)
        log.info(
            "credits_settled",
            action=action,
            session_id=session_id,
            cost_usd=cost,
            additional_charged=result.additional_charged,
            balance=result.balance,
        )
        if result.balance < 0:
            log.warning("balance_negative", balance=result.balance)
        return result

    async def rollback(
        self,
        uid: str,
        session_id: str,
        action: str,
        provisional_charged: float,
        reason: str,
    ) -> RollbackResult:
        """Refund a reservation whose external call failed and restore the pair state."""

        async def _rollback(tx: Transaction) -> RollbackResult:
            session = await self._load_session(tx, uid, session_id)
            balance = await load_balance(tx, uid)
            pair = pair_of(action)
            restored = self.pairs.rollback(action, session.pair(pair), provisional_charged)
            refund = 0.0
            if restored is not None:
                session.set_pair(pair, restored)
                refund = provisional_charged
            session.last_failed_action = action
            session.last_failure_reason = reason[:500]
            self._save_session(tx, session)
            # A pair that was already settled or released has nothing left to refund
            apply_credit_delta(
                tx, balance, refund, "rollback", action=action, session_id=session_id, decimals=self.pricing.decimals
            )
            return RollbackResult(refunded=refund, balance=balance.balance, restored=restored is not None)

        result = await self.store.run_transaction(_rollback)
        log.info(
            "credits_rolled_back",
            action=action,
            session_id=session_id,
            refunded=result.refunded,
            balance=result.balance,
            restored=result.restored,
            reason=reason[:200],
        )
        return result

    async def release_pending_pair(self, uid: str, session_id: str, pair: str) -> RollbackResult:
        """Refund whatever an abandoned pair still holds and return it to idle."""
        pair = pair_of(pair)

        async def _release(tx: Transaction) -> RollbackResult:
            session = await self._load_session(tx, uid, session_id)
            balance = await load_balance(tx, uid)
            refund, state = self.pairs.release(session.pair(pair))
            session.set_pair(pair, state)
            self._save_session(tx, session)
            apply_credit_delta(
                tx, balance, refund, "release", action=pair, session_id=session_id, decimals=self.pricing.decimals
            )
            return RollbackResult(refunded=refund, balance=balance.balance, restored=True)

        result = await self.store.run_transaction(_release)
        log.info("pending_pair_released", uid=uid, session_id=session_id, pair=pair, refunded=result.refunded)
        return result

    async def list_entries(self, uid: str, limit: int = 50, offset: int = 0) -> list[CreditLedgerEntry]:
        docs = await self.store.find(
            CreditLedgerEntry.collection,
            {"uid": uid},
            order_by="created_at",
            descending=True,
            limit=limit,
            offset=offset,
        )
        return [CreditLedgerEntry.from_doc(d) for d in docs]

    def reservation_target(self, session: GenerationSession | None, action: str, estimate: TokenUsage) -> float:
        """Credits the pair should hold once `action` starts, given its estimated usage."""
        cost = self.pricing.cost_usd(estimate)
        if not is_first_phase(action) and session is not None:
            cost += session.pair(pair_of(action)).model_dump().get("cost_usd", 0.0)
        return self.pricing.billed_credits(cost)
