"""Generation session: per (user, session id) pair-billing state."""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, computed_field

from creditmeter.models.base import StoredModel

Pair = Literal["plan", "evaluate"]


class Idle(BaseModel):
    kind: Literal["idle"] = "idle"


class FirstPhaseReserved(BaseModel):
    """First phase reserved, its call not yet settled.

    `carried` is set when the reservation folded into a pair that was already
    awaiting its second phase; cost and tokens are the amounts carried over.
    """

    kind: Literal["first_phase_reserved"] = "first_phase_reserved"
    reserved_credits: float
    cost_usd: float = 0.0
    tokens: int = 0
    carried: bool = False


class AwaitingSecondPhase(BaseModel):
    kind: Literal["awaiting_second_phase"] = "awaiting_second_phase"
    cost_usd: float
    tokens: int
    reserved_credits: float


class SecondPhaseReserved(BaseModel):
    kind: Literal["second_phase_reserved"] = "second_phase_reserved"
    cost_usd: float
    tokens: int
    reserved_credits: float


PairState = Annotated[
    Union[Idle, FirstPhaseReserved, AwaitingSecondPhase, SecondPhaseReserved],
    Field(discriminator="kind"),
]


def _pending(state: BaseModel) -> int:
    return 1 if isinstance(state, (FirstPhaseReserved, AwaitingSecondPhase)) else 0


def _stashed(state: BaseModel, attr: str) -> float:
    if isinstance(state, (AwaitingSecondPhase, SecondPhaseReserved)):
        return getattr(state, attr)
    if isinstance(state, FirstPhaseReserved) and attr == "reserved_credits":
        return state.reserved_credits
    return 0.0


class GenerationSession(StoredModel):
    collection = "generation_sessions"

    id: str
    uid: str
    session_id: str
    plan_pair: PairState = Field(default_factory=Idle)
    evaluate_pair: PairState = Field(default_factory=Idle)
    action_count: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_thought_tokens: int = 0
    last_action: str | None = None
    last_failed_action: str | None = None
    last_failure_reason: str | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @staticmethod
    def doc_id(uid: str, session_id: str) -> str:
        return f"{uid}:{session_id}"

    @classmethod
    def new(cls, uid: str, session_id: str) -> "GenerationSession":
        return cls(id=cls.doc_id(uid, session_id), uid=uid, session_id=session_id)

    def pair(self, pair: Pair):
        return self.plan_pair if pair == "plan" else self.evaluate_pair

    def set_pair(self, pair: Pair, state) -> None:
        if pair == "plan":
            self.plan_pair = state
        else:
            self.evaluate_pair = state

    @computed_field
    @property
    def pending_generate(self) -> int:
        return _pending(self.plan_pair)

    @computed_field
    @property
    def pending_refine(self) -> int:
        return _pending(self.evaluate_pair)

    @computed_field
    @property
    def pending_plan_cost_usd(self) -> float:
        return _stashed(self.plan_pair, "cost_usd")

    @computed_field
    @property
    def pending_plan_reserved_credits(self) -> float:
        return _stashed(self.plan_pair, "reserved_credits")

    @computed_field
    @property
    def pending_evaluate_cost_usd(self) -> float:
        return _stashed(self.evaluate_pair, "cost_usd")

    @computed_field
    @property
    def pending_evaluate_reserved_credits(self) -> float:
        return _stashed(self.evaluate_pair, "reserved_credits")
