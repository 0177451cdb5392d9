"""Pure pair-state transitions (no store)."""

from dataclasses import replace

import pytest

from creditmeter.core.exceptions import FailedPreconditionError, InvalidArgumentError
from creditmeter.models.session import (
    AwaitingSecondPhase,
    FirstPhaseReserved,
    GenerationSession,
    Idle,
    SecondPhaseReserved,
)
from creditmeter.services.pair_billing import PairBillingStateMachine, pair_of


@pytest.fixture
def machine(curve):
    return PairBillingStateMachine(curve)


def test_pair_of():
    assert pair_of("plan") == "plan"
    assert pair_of("generate") == "plan"
    assert pair_of("evaluate") == "evaluate"
    assert pair_of("refine") == "evaluate"
    with pytest.raises(InvalidArgumentError):
        pair_of("summarize")


def test_full_pair_cycle(machine):
    r = machine.reserve("plan", Idle(), 0.05)
    assert r.charged == 0.05
    assert isinstance(r.state, FirstPhaseReserved)

    s = machine.settle("plan", r.state, 0.234, 1_000)
    assert s.delta == 0.0
    assert s.state == AwaitingSecondPhase(cost_usd=0.234, tokens=1_000, reserved_credits=0.05)

    r2 = machine.reserve("generate", s.state, 0.3)
    assert r2.charged == 0.25
    assert isinstance(r2.state, SecondPhaseReserved)
    assert r2.state.reserved_credits == 0.3

    s2 = machine.settle("generate", r2.state, 0.5, 2_000)
    assert isinstance(s2.state, Idle)
    assert s2.pair_quote.billed_credits == 0.734
    assert s2.delta == 0.434
    assert s2.pair_tokens == 3_000


def test_settlement_refunds_over_reservation(machine):
    state = SecondPhaseReserved(cost_usd=0.1, tokens=10, reserved_credits=1.0)
    s = machine.settle("generate", state, 0.2, 10)
    assert s.pair_quote.billed_credits == 0.3
    assert s.delta == -0.7


def test_second_phase_without_first_fails(machine):
    with pytest.raises(FailedPreconditionError, match="Planning has not run"):
        machine.reserve("generate", Idle(), 0.1)
    with pytest.raises(FailedPreconditionError, match="Evaluation has not run"):
        machine.reserve("refine", Idle(), 0.1)


def test_second_phase_on_unsettled_first_phase_is_stale(machine):
    state = FirstPhaseReserved(reserved_credits=0.05)
    with pytest.raises(FailedPreconditionError, match="Planning state is stale"):
        machine.reserve("generate", state, 0.1)


def test_second_phase_already_in_progress(machine):
    state = SecondPhaseReserved(cost_usd=0.1, tokens=1, reserved_credits=0.1)
    with pytest.raises(FailedPreconditionError, match="already in progress"):
        machine.reserve("generate", state, 0.1)
    with pytest.raises(FailedPreconditionError, match="already in progress"):
        machine.reserve("plan", state, 0.1)


def test_repeated_first_phase_folds_into_open_pair(machine):
    awaiting = AwaitingSecondPhase(cost_usd=0.2, tokens=5, reserved_credits=0.05)
    r = machine.reserve("plan", awaiting, 0.05)
    assert r.state == FirstPhaseReserved(reserved_credits=0.1, cost_usd=0.2, tokens=5, carried=True)

    s = machine.settle("plan", r.state, 0.1, 5)
    assert s.state.cost_usd == pytest.approx(0.3)
    assert s.state.tokens == 10
    assert s.state.reserved_credits == 0.1


def test_rollback_restores_previous_state(machine):
    r = machine.reserve("plan", Idle(), 0.05)
    assert machine.rollback("plan", r.state, 0.05) == Idle()

    awaiting = AwaitingSecondPhase(cost_usd=0.2, tokens=5, reserved_credits=0.05)
    folded = machine.reserve("plan", awaiting, 0.05).state
    assert machine.rollback("plan", folded, 0.05) == awaiting

    second = machine.reserve("generate", awaiting, 0.3)
    assert machine.rollback("generate", second.state, second.charged) == awaiting


def test_rollback_after_release_cannot_restore(machine):
    assert machine.rollback("generate", Idle(), 0.2) is None


def test_release(machine):
    refund, state = machine.release(AwaitingSecondPhase(cost_usd=0.1, tokens=1, reserved_credits=0.05))
    assert refund == 0.05
    assert state == Idle()
    assert machine.release(Idle()) == (0.0, Idle())


def test_release_stuck_second_phase(machine):
    refund, state = machine.release(SecondPhaseReserved(cost_usd=0.1, tokens=1, reserved_credits=0.1))
    assert refund == 0.1
    assert state == Idle()


def test_rounding_follows_curve_precision(curve):
    machine = PairBillingStateMachine(replace(curve, decimals=2))
    r = machine.reserve("plan", Idle(), 0.1234)
    assert r.charged == 0.12
    assert r.state.reserved_credits == 0.12
    s = machine.settle("generate", SecondPhaseReserved(cost_usd=0.1, tokens=1, reserved_credits=0.12), 0.0, 1)
    assert s.pair_quote.billed_credits == 0.1
    assert s.delta == -0.02


def test_pending_counters_are_derived():
    session = GenerationSession.new("u1", "session-0001")
    assert session.pending_generate == 0
    session.set_pair("plan", FirstPhaseReserved(reserved_credits=0.05))
    assert session.pending_generate == 1
    session.set_pair("plan", AwaitingSecondPhase(cost_usd=0.1, tokens=1, reserved_credits=0.05))
    assert session.pending_generate == 1
    assert session.pending_plan_cost_usd == 0.1
    session.set_pair("plan", SecondPhaseReserved(cost_usd=0.1, tokens=1, reserved_credits=0.05))
    assert session.pending_generate == 0
    assert session.pending_refine == 0

    restored = GenerationSession.from_doc(session.to_doc())
    assert isinstance(restored.plan_pair, SecondPhaseReserved)
