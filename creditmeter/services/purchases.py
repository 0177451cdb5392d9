"""Idempotent credit grants from verified Google Play purchases.

The purchase record id is the SHA-256 of the purchase token, so every retry or
duplicate submission of the same purchase lands on the same document. Creating
that document (not upserting it) is the lock: exactly one request wins.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from creditmeter.core.audit import log_event
from creditmeter.core.config import get_settings
from creditmeter.core.encryption import decrypt_token, encrypt_token
from creditmeter.core.exceptions import (
    AbortedError,
    AppError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    PermissionDeniedError,
)
from creditmeter.core.logging import get_logger
from creditmeter.core.security import purchase_record_id
from creditmeter.integrations.play_store import PurchaseVerifier
from creditmeter.models.purchase import PurchaseRecord
from creditmeter.services.ledger import apply_credit_delta, load_balance
from creditmeter.store.base import DocumentExistsError, LedgerStore, Transaction

log = get_logger(__name__)


@dataclass(frozen=True)
class PurchaseOutcome:
    already_credited: bool
    balance: float
    credits_granted: float


class PurchaseCreditor:
    def __init__(
        self,
        store: LedgerStore,
        verifier: PurchaseVerifier,
        credit_packs: dict[str, int] | None = None,
        processing_timeout: timedelta | None = None,
        decimals: int | None = None,
    ):
        settings = get_settings()
        self.store = store
        self.verifier = verifier
        self.credit_packs = credit_packs if credit_packs is not None else settings.credit_packs
        self.processing_timeout = processing_timeout or timedelta(seconds=settings.purchase_processing_timeout_seconds)
        self.decimals = decimals if decimals is not None else settings.credit_precision_decimals

    async def credit_from_purchase(self, uid: str, purchase_token: str, product_id: str) -> PurchaseOutcome:
        if not purchase_token or not product_id:
            raise InvalidArgumentError("Missing purchaseToken or productId")
        credits = self.credit_packs.get(product_id)
        if not credits:
            raise InvalidArgumentError(f"Unknown product: {product_id}")

        record_id = purchase_record_id(purchase_token)
        attempt_id = uuid.uuid4().hex
        record = PurchaseRecord(
            id=record_id,
            uid=uid,
            product_id=product_id,
            attempt_id=attempt_id,
            purchase_token_encrypted=encrypt_token(purchase_token),
        )
        try:
            await self.store.create(PurchaseRecord.collection, record_id, record.to_doc())
        except DocumentExistsError:
            existing = await self._claim_existing(record, uid)
            if existing.status == "completed":
                if existing.consume_pending:
                    await self._consume(existing, purchase_token)
                return PurchaseOutcome(
                    already_credited=True,
                    balance=existing.balance_after or 0.0,
                    credits_granted=existing.credits_granted,
                )

        try:
            purchase = await self.verifier.get_purchase(product_id, purchase_token)
            if not purchase.completed:
                raise FailedPreconditionError("Purchase not completed")
            if purchase.obfuscated_account_id and purchase.obfuscated_account_id != uid:
                raise PermissionDeniedError("Purchase belongs to a different account")
        except Exception as e:
            await self._mark_failed(record_id, attempt_id, e)
            if isinstance(e, AppError):
                raise
            log.exception("purchase_verification_failed", purchase_id=record_id, product_id=product_id)
            raise InternalError("Failed to verify purchase") from e

        if purchase.consumed:
            # Consumed earlier outside this record: a replayed token earns nothing
            balance = await self._complete(record_id, attempt_id, 0, purchase.order_id, consume_pending=False)
            log.warning("purchase_already_consumed", purchase_id=record_id, product_id=product_id)
            return PurchaseOutcome(already_credited=True, balance=balance, credits_granted=0)

        balance = await self._complete(record_id, attempt_id, credits, purchase.order_id, consume_pending=True)
        log.info("purchase_credited", purchase_id=record_id, product_id=product_id, credits=credits, balance=balance)
        await log_event(
            self.store, uid, "purchase_credited", "purchase", record_id,
            {"product_id": product_id, "credits": credits, "order_id": purchase.order_id},
        )

        done = await self.store.get(PurchaseRecord.collection, record_id)
        await self._consume(PurchaseRecord.from_doc(done), purchase_token)
        return PurchaseOutcome(already_credited=False, balance=balance, credits_granted=credits)

    async def _claim_existing(self, fresh: PurchaseRecord, uid: str) -> PurchaseRecord:
        """Return the completed record, or take over a failed/stale one for this attempt."""

        async def _claim(tx: Transaction) -> PurchaseRecord:
            doc = await tx.get(PurchaseRecord.collection, fresh.id)
            if doc is None:
                # Deleted between create and read (account deletion); start fresh
                tx.set(PurchaseRecord.collection, fresh.id, fresh.to_doc())
                return fresh
            record = PurchaseRecord.from_doc(doc)
            if record.uid != uid:
                raise PermissionDeniedError("Purchase token belongs to a different account")
            if record.status == "completed":
                return record
            stale = datetime.utcnow() - record.updated_at > self.processing_timeout
            if record.status == "processing" and not stale:
                raise AbortedError("Purchase is being processed, retry later")
            record.status = "processing"
            record.product_id = fresh.product_id
            record.attempt_id = fresh.attempt_id
            record.purchase_token_encrypted = fresh.purchase_token_encrypted
            record.attempts += 1
            record.updated_at = datetime.utcnow()
            tx.set(PurchaseRecord.collection, record.id, record.to_doc())
            return record

        record = await self.store.run_transaction(_claim)
        if record.status != "completed":
            log.info("purchase_retry_claimed", purchase_id=record.id, attempts=record.attempts)
        return record

    async def recover_pending_consumption(self, limit: int = 50) -> int:
        """Retry the store-side consume for completed purchases still flagged pending."""
        docs = await self.store.find(
            PurchaseRecord.collection,
            {"status": "completed", "consume_pending": True},
            limit=limit,
        )
        recovered = 0
        for doc in docs:
            record = PurchaseRecord.from_doc(doc)
            token = decrypt_token(record.purchase_token_encrypted)
            if not token:
                log.warning("purchase_consume_unrecoverable", purchase_id=record.id)
                continue
            if await self._consume(record, token):
                recovered += 1
        if docs:
            log.info("purchase_consume_recovery", pending=len(docs), recovered=recovered)
        return recovered

    async def _complete(
        self,
        record_id: str,
        attempt_id: str,
        credits: float,
        order_id: str | None,
        consume_pending: bool,
    ) -> float:
        """Credit the balance and mark the record completed in one transaction."""

        async def _credit(tx: Transaction) -> float:
            doc = await tx.get(PurchaseRecord.collection, record_id)
            record = PurchaseRecord.from_doc(doc) if doc else None
            if record is None or record.status != "processing" or record.attempt_id != attempt_id:
                raise AbortedError("Purchase was taken over by another request, retry later")
            balance = await load_balance(tx, record.uid)
            apply_credit_delta(tx, balance, credits, "purchase", reference_id=record_id, decimals=self.decimals)
            now = datetime.utcnow()
            record.status = "completed"
            record.credits_granted = credits
            record.balance_after = balance.balance
            record.consume_pending = consume_pending
            record.order_id = order_id
            record.last_error = None
            record.updated_at = now
            record.completed_at = now
            tx.set(PurchaseRecord.collection, record_id, record.to_doc())
            return balance.balance

        return await self.store.run_transaction(_credit)

    async def _mark_failed(self, record_id: str, attempt_id: str, error: Exception) -> None:
        async def _fail(tx: Transaction) -> None:
            doc = await tx.get(PurchaseRecord.collection, record_id)
            if doc is None:
                return
            record = PurchaseRecord.from_doc(doc)
            if record.attempt_id != attempt_id or record.status != "processing":
                return
            record.status = "failed"
            record.last_error = (getattr(error, "message", None) or str(error))[:500]
            record.updated_at = datetime.utcnow()
            tx.set(PurchaseRecord.collection, record_id, record.to_doc())

        await self.store.run_transaction(_fail)

    async def _consume(self, record: PurchaseRecord, purchase_token: str) -> bool:
        """Consume on the store side; failure leaves consume_pending for recovery."""
        try:
            await self.verifier.consume(record.product_id, purchase_token)
        except Exception as e:
            log.warning("purchase_consume_failed", purchase_id=record.id, error=str(e)[:200])
            return False

        async def _clear(tx: Transaction) -> None:
            doc = await tx.get(PurchaseRecord.collection, record.id)
            if doc is None:
                return
            current = PurchaseRecord.from_doc(doc)
            current.consume_pending = False
            current.updated_at = datetime.utcnow()
            tx.set(PurchaseRecord.collection, record.id, current.to_doc())

        await self.store.run_transaction(_clear)
        return True
