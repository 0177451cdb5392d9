"""Two-phase pair billing: plan -> generate, evaluate -> refine.

The first phase of a pair only reserves credits; its true cost is stashed on
the session and billed together with the second phase once that completes.

    Idle -> FirstPhaseReserved -> AwaitingSecondPhase -> SecondPhaseReserved -> Idle

Transitions here are pure: they take the current pair state and return the
next one plus the credit movement. CreditLedger applies them inside a store
transaction.
"""

from dataclasses import dataclass

from creditmeter.core.exceptions import FailedPreconditionError, InvalidArgumentError
from creditmeter.models.session import (
    AwaitingSecondPhase,
    FirstPhaseReserved,
    Idle,
    SecondPhaseReserved,
)
from creditmeter.services.pricing import (
    FIRST_PHASE,
    SECOND_PHASE,
    CreditQuote,
    PricingCurve,
    round_credits,
)

_LABELS = {
    "plan": ("Planning", "planning", "generate"),
    "evaluate": ("Evaluation", "evaluation", "refine"),
}


def pair_of(action: str) -> str:
    if action in FIRST_PHASE:
        return FIRST_PHASE[action]
    if action in SECOND_PHASE:
        return SECOND_PHASE[action]
    raise InvalidArgumentError(f"Unknown action: {action}")


def is_first_phase(action: str) -> bool:
    return action in FIRST_PHASE


@dataclass(frozen=True)
class Reservation:
    charged: float
    state: object


@dataclass(frozen=True)
class Settlement:
    delta: float  # credits debited now; negative refunds an over-reservation
    state: object
    pair_quote: CreditQuote | None = None
    pair_tokens: int = 0
    recorded: bool = True


class PairBillingStateMachine:
    def __init__(self, pricing: PricingCurve):
        self.pricing = pricing

    def _round(self, value: float) -> float:
        return round_credits(value, self.pricing.decimals)

    def reserve(self, action: str, state, target_credits: float) -> Reservation:
        """Incremental charge for `action` given its reservation target."""
        pair = pair_of(action)
        title, phase, second = _LABELS[pair]
        target = self._round(max(0.0, target_credits))
        if is_first_phase(action):
            if isinstance(state, SecondPhaseReserved):
                raise FailedPreconditionError(f"{second.capitalize()} is already in progress for this session.")
            if isinstance(state, FirstPhaseReserved):
                return Reservation(
                    target,
                    state.model_copy(update={"reserved_credits": self._round(state.reserved_credits + target)}),
                )
            if isinstance(state, AwaitingSecondPhase):
                return Reservation(
                    target,
                    FirstPhaseReserved(
                        reserved_credits=self._round(state.reserved_credits + target),
                        cost_usd=state.cost_usd,
                        tokens=state.tokens,
                        carried=True,
                    ),
                )
            return Reservation(target, FirstPhaseReserved(reserved_credits=target))

        if isinstance(state, FirstPhaseReserved):
            raise FailedPreconditionError(f"{title} state is stale. Run {phase} again before {second}.")
        if isinstance(state, SecondPhaseReserved):
            raise FailedPreconditionError(f"{second.capitalize()} is already in progress for this session.")
        if not isinstance(state, AwaitingSecondPhase):
            raise FailedPreconditionError(f"{title} has not run for this session. Run {phase} before {second}.")
        charge = self._round(max(0.0, target - state.reserved_credits))
        return Reservation(
            charge,
            SecondPhaseReserved(
                cost_usd=state.cost_usd,
                tokens=state.tokens,
                reserved_credits=self._round(state.reserved_credits + charge),
            ),
        )

    def settle(self, action: str, state, cost_usd: float, tokens: int) -> Settlement:
        """Stash a first phase's cost, or bill the whole pair when the second phase lands.

        The second-phase delta is signed rather than floored at zero: when the pair
        reserved more than billed(pair cost), the difference is refunded, so a
        settled pair always nets to exactly its billed cost.
        """
        if is_first_phase(action):
            if isinstance(state, (FirstPhaseReserved, AwaitingSecondPhase)):
                return Settlement(
                    0.0,
                    AwaitingSecondPhase(
                        cost_usd=state.cost_usd + cost_usd,
                        tokens=state.tokens + tokens,
                        reserved_credits=state.reserved_credits,
                    ),
                )
            # Reservation was released or rolled back underneath this call
            return Settlement(0.0, state, recorded=False)

        if not isinstance(state, SecondPhaseReserved):
            raise FailedPreconditionError(f"No reservation is open for {action} in this session.")
        pair_cost = state.cost_usd + cost_usd
        quote = self.pricing.quote_cost(pair_cost)
        delta = self._round(quote.billed_credits - state.reserved_credits)
        return Settlement(delta, Idle(), pair_quote=quote, pair_tokens=state.tokens + tokens)

    def rollback(self, action: str, state, provisional_charged: float):
        """Pair state before the reservation of `provisional_charged`, or None if it cannot be restored."""
        if is_first_phase(action):
            if isinstance(state, FirstPhaseReserved):
                remaining = self._round(state.reserved_credits - provisional_charged)
                if state.carried:
                    return AwaitingSecondPhase(cost_usd=state.cost_usd, tokens=state.tokens, reserved_credits=remaining)
                if remaining <= 0:
                    return Idle()
                return state.model_copy(update={"reserved_credits": remaining})
            if isinstance(state, AwaitingSecondPhase):
                remaining = self._round(state.reserved_credits - provisional_charged)
                return state.model_copy(update={"reserved_credits": max(0.0, remaining)})
            return None

        if isinstance(state, SecondPhaseReserved):
            return AwaitingSecondPhase(
                cost_usd=state.cost_usd,
                tokens=state.tokens,
                reserved_credits=self._round(state.reserved_credits - provisional_charged),
            )
        return None

    def release(self, state) -> tuple[float, Idle]:
        """Operator path: drop an abandoned pair in any phase and refund everything it reserved."""
        if isinstance(state, (FirstPhaseReserved, AwaitingSecondPhase, SecondPhaseReserved)):
            return self._round(state.reserved_credits), Idle()
        return 0.0, Idle()
