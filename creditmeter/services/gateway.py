"""Generation gateway: reserve -> call the model -> settle -> respond.

The model call always runs outside any ledger transaction. If it fails (or the
caller goes away) after credits were reserved, the exact reserved amount is
rolled back before the error surfaces. Settlement runs shielded from
cancellation, and a settlement that cannot commit rolls back the same way.
"""

import asyncio
import contextlib
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterator

from creditmeter.core.config import Settings, get_settings
from creditmeter.core.exceptions import AppError, InternalError, InvalidArgumentError
from creditmeter.core.logging import get_logger
from creditmeter.core.security import require_session_id
from creditmeter.integrations.gemini import GenerationClient
from creditmeter.services.ledger import CreditLedger, ReserveResult, SettleResult
from creditmeter.services.pair_billing import is_first_phase
from creditmeter.services.pricing import ACTIONS, CREDIT_PRECISION_DECIMALS, TokenUsage, display_credits

log = get_logger(__name__)

_PAIRED_SECOND_PHASE = {"plan": "generate", "evaluate": "refine"}


@dataclass
class CostEstimate:
    estimated_input_tokens: int
    estimated_output_tokens: int
    estimated_total: int
    estimated_cost_usd: float
    estimated_pair_input_tokens: int
    estimated_pair_output_tokens: int
    estimated_pair_total: int
    estimated_pair_cost_usd: float
    estimated_raw_credits: float
    estimated_credit_cost: float
    estimated_display_credits: int
    safety_margin_rate: float
    credit_precision_decimals: int = CREDIT_PRECISION_DECIMALS
    billing_display_whole_credits: bool = True


@dataclass
class GenerateOutcome:
    text: str
    thoughts: str | None
    tokens_used: int
    remaining_balance: float
    charged_credits_this_action: float
    additional_charged_credits: float
    pair_credits_charged: float | None
    raw_pair_credits: float | None
    display_credits: int
    usage_estimated_fallback: bool = False
    credit_precision_decimals: int = CREDIT_PRECISION_DECIMALS
    billing_display_whole_credits: bool = True


@dataclass
class StreamEvent:
    event: str  # status | thought | output | complete | error | keepalive
    data: dict[str, Any]


def validate_action(action: str | None) -> str:
    if not action or action not in ACTIONS:
        raise InvalidArgumentError("Invalid action")
    return action


class GenerationGateway:
    def __init__(self, ledger: CreditLedger, client: GenerationClient, settings: Settings | None = None):
        self.ledger = ledger
        self.client = client
        self.settings = settings or get_settings()

    @property
    def pricing(self):
        return self.ledger.pricing

    def _output_estimate(self, action: str) -> int:
        return self.settings.output_estimates.get(action, self.settings.default_output_estimate)

    async def _estimate_usage(self, action: str, payload: dict[str, Any]) -> TokenUsage:
        try:
            input_tokens = await self.client.count_tokens(action, payload)
        except AppError:
            raise
        except Exception as e:
            log.exception("count_tokens_failed", action=action)
            raise InternalError("Failed to count tokens") from e
        if input_tokens > self.settings.max_input_tokens:
            raise InvalidArgumentError(
                f"Input too large: {input_tokens} tokens (max {self.settings.max_input_tokens})",
                details={"input_tokens": input_tokens, "max_input_tokens": self.settings.max_input_tokens},
            )
        return TokenUsage(input_tokens=input_tokens, output_tokens=self._output_estimate(action))

    async def estimate(self, action: str, payload: dict[str, Any]) -> CostEstimate:
        """Read-only quote; pair figures include the paired second phase for plan/evaluate."""
        action = validate_action(action)
        usage = await self._estimate_usage(action, payload)
        pair = usage
        if is_first_phase(action):
            second = _PAIRED_SECOND_PHASE[action]
            pair = usage + TokenUsage(input_tokens=usage.output_tokens, output_tokens=self._output_estimate(second))
        quote = self.pricing.quote(pair)
        return CostEstimate(
            estimated_input_tokens=usage.input_tokens,
            estimated_output_tokens=usage.output_tokens,
            estimated_total=usage.total,
            estimated_cost_usd=self.pricing.cost_usd(usage),
            estimated_pair_input_tokens=pair.input_tokens,
            estimated_pair_output_tokens=pair.output_tokens,
            estimated_pair_total=pair.total,
            estimated_pair_cost_usd=quote.cost_usd,
            estimated_raw_credits=quote.raw_credits,
            estimated_credit_cost=quote.billed_credits,
            estimated_display_credits=quote.display_credits,
            safety_margin_rate=self.pricing.safety_margin_rate,
            credit_precision_decimals=self.pricing.decimals,
        )

    async def _reserve(self, uid: str, session_id: str, action: str, estimate: TokenUsage) -> ReserveResult:
        session = await self.ledger.get_session(uid, session_id)
        target = self.ledger.reservation_target(session, action, estimate)
        return await self.ledger.reserve(uid, session_id, action, target)

    async def _rollback(self, uid: str, session_id: str, action: str, charged: float, error: BaseException) -> None:
        reason = getattr(error, "message", None) or str(error) or type(error).__name__
        try:
            await self.ledger.rollback(uid, session_id, action, charged, reason)
        except Exception:
            # The caller still sees the generation error; this reservation needs an operator release
            log.exception("rollback_failed", action=action, session_id=session_id, charged=charged)

    async def _settle(self, uid: str, session_id: str, action: str, usage: TokenUsage, charged: float) -> SettleResult:
        """Settle the finished call; if the settlement cannot commit, hand the reservation back."""
        try:
            return await self.ledger.settle(uid, session_id, action, usage)
        except Exception as e:
            log.exception("settle_failed", action=action, session_id=session_id)
            await self._rollback(uid, session_id, action, charged, e)
            if isinstance(e, AppError):
                raise
            raise InternalError("Settlement failed") from e

    def _outcome(
        self,
        action: str,
        text: str,
        thoughts: str | None,
        usage: TokenUsage,
        reservation: ReserveResult,
        settlement: SettleResult,
        fallback: bool,
    ) -> GenerateOutcome:
        charged = round(reservation.charged + settlement.additional_charged, self.pricing.decimals)
        quote = settlement.pair_quote
        return GenerateOutcome(
            text=text,
            thoughts=thoughts,
            tokens_used=usage.total,
            remaining_balance=settlement.balance,
            charged_credits_this_action=charged,
            additional_charged_credits=settlement.additional_charged,
            pair_credits_charged=quote.billed_credits if quote else None,
            raw_pair_credits=quote.raw_credits if quote else None,
            display_credits=quote.display_credits if quote else display_credits(charged),
            usage_estimated_fallback=fallback,
            credit_precision_decimals=self.pricing.decimals,
        )

    async def generate(self, uid: str, action: str, session_id: str, payload: dict[str, Any]) -> GenerateOutcome:
        action = validate_action(action)
        session_id = require_session_id(session_id)
        estimate = await self._estimate_usage(action, payload)
        reservation = await self._reserve(uid, session_id, action, estimate)

        try:
            result = await self.client.generate(action, payload)
        except BaseException as e:
            await self._rollback(uid, session_id, action, reservation.charged, e)
            if isinstance(e, AppError) or not isinstance(e, Exception):
                raise
            log.exception("generation_failed", action=action, session_id=session_id)
            raise InternalError("Generation failed") from e

        usage, fallback = result.usage, False
        if usage is None:
            log.warning("usage_metadata_missing", action=action, session_id=session_id)
            usage, fallback = estimate, True
        settlement = await asyncio.shield(self._settle(uid, session_id, action, usage, reservation.charged))
        return self._outcome(action, result.text, result.thoughts, usage, reservation, settlement, fallback)

    async def _stream_events(
        self, uid: str, action: str, session_id: str, payload: dict[str, Any]
    ) -> AsyncIterator[StreamEvent]:
        yield StreamEvent("status", {"stage": "estimating"})
        estimate = await self._estimate_usage(action, payload)
        yield StreamEvent("status", {"stage": "reserving"})
        reservation = await self._reserve(uid, session_id, action, estimate)
        yield StreamEvent("status", {"stage": "generating"})

        text_parts: list[str] = []
        thought_parts: list[str] = []
        usage = None
        try:
            async for chunk in self.client.stream(action, payload):
                if chunk.kind == "thought" and chunk.text:
                    thought_parts.append(chunk.text)
                    yield StreamEvent("thought", {"chunk": chunk.text})
                elif chunk.kind == "output" and chunk.text:
                    text_parts.append(chunk.text)
                    yield StreamEvent("output", {"chunk": chunk.text})
                elif chunk.usage is not None:
                    usage = chunk.usage
        except BaseException as e:
            await self._rollback(uid, session_id, action, reservation.charged, e)
            if isinstance(e, AppError) or not isinstance(e, Exception):
                raise
            log.exception("generation_stream_failed", action=action, session_id=session_id)
            raise InternalError("Generation failed") from e

        fallback = usage is None
        if fallback:
            log.warning("usage_metadata_missing", action=action, session_id=session_id, streamed=True)
            usage = estimate
        yield StreamEvent("status", {"stage": "settling"})
        # A disconnect from here on must not abort the settlement half way
        settlement = await asyncio.shield(self._settle(uid, session_id, action, usage, reservation.charged))
        outcome = self._outcome(
            action, "".join(text_parts), "".join(thought_parts) or None, usage, reservation, settlement, fallback
        )
        yield StreamEvent("complete", asdict(outcome))

    async def stream(self, uid: str, action: str, session_id: str, payload: dict[str, Any]) -> AsyncIterator[StreamEvent]:
        """Same billing as generate(); chunks are pushed as they arrive, with keep-alives while idle."""
        action = validate_action(action)
        session_id = require_session_id(session_id)
        queue: asyncio.Queue = asyncio.Queue()
        done = object()

        async def produce() -> None:
            try:
                async for event in self._stream_events(uid, action, session_id, payload):
                    await queue.put(event)
            except AppError as e:
                await queue.put(StreamEvent("error", {"message": e.message, "code": e.code}))
            except Exception:
                log.exception("generation_stream_error", action=action, session_id=session_id)
                await queue.put(StreamEvent("error", {"message": "Generation failed", "code": "INTERNAL"}))
            finally:
                queue.put_nowait(done)

        task = asyncio.create_task(produce())
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=self.settings.stream_keepalive_seconds)
                except asyncio.TimeoutError:
                    yield StreamEvent("keepalive", {})
                    continue
                if item is done:
                    break
                yield item
        finally:
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
