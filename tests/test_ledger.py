"""CreditLedger against the in-memory store."""

import asyncio
from dataclasses import replace

import pytest

from conftest import balance_of
from creditmeter.core.exceptions import FailedPreconditionError, ResourceExhaustedError
from creditmeter.models.session import Idle
from creditmeter.services.ledger import CreditLedger
from creditmeter.services.pricing import TokenUsage

UID = "user-1"
SID = "session-0001"


async def test_get_balance_creates_zero_record(ledger, store):
    balance = await ledger.get_balance(UID)
    assert balance.balance == 0.0
    assert await store.get("balances", UID) is not None


async def test_scenario_plan_then_generate(ledger, store, fund):
    await fund(UID, 10.0)

    reserved = await ledger.reserve(UID, SID, "plan", 0.05)
    assert reserved.charged == 0.05
    assert reserved.balance == 9.95

    await ledger.settle(UID, SID, "plan", TokenUsage(output_tokens=234_000))
    session = await ledger.get_session(UID, SID)
    assert session.pending_generate == 1

    second = await ledger.reserve(UID, SID, "generate", 0.05)
    assert second.charged == 0.0

    settled = await ledger.settle(UID, SID, "generate", TokenUsage(output_tokens=500_000))
    assert settled.pair_quote.billed_credits == 0.734
    assert settled.additional_charged == 0.684
    assert settled.balance == 9.266
    assert await balance_of(store, UID) == 9.266

    session = await ledger.get_session(UID, SID)
    assert session.pending_generate == 0
    assert session.action_count == 2


@pytest.mark.parametrize("split", [(0, 734_000), (234_000, 500_000), (700_000, 34_000)])
async def test_conservation_independent_of_split(ledger, store, fund, split):
    plan_tokens, generate_tokens = split
    await fund(UID, 10.0)
    await ledger.reserve(UID, SID, "plan", 0.05)
    await ledger.settle(UID, SID, "plan", TokenUsage(output_tokens=plan_tokens))
    session = await ledger.get_session(UID, SID)
    target = ledger.reservation_target(session, "generate", TokenUsage(output_tokens=10_000))
    await ledger.reserve(UID, SID, "generate", target)
    await ledger.settle(UID, SID, "generate", TokenUsage(output_tokens=generate_tokens))
    assert await balance_of(store, UID) == 9.266


async def test_generate_without_plan_leaves_balance_unchanged(ledger, store, fund):
    await fund(UID, 5.0)
    with pytest.raises(FailedPreconditionError):
        await ledger.reserve(UID, SID, "generate", 0.1)
    assert await balance_of(store, UID) == 5.0
    assert await ledger.get_session(UID, SID) is None


async def test_generate_after_closed_pair_fails(ledger, store, fund):
    await fund(UID, 5.0)
    await ledger.reserve(UID, SID, "plan", 0.05)
    await ledger.settle(UID, SID, "plan", TokenUsage(output_tokens=1_000))
    await ledger.reserve(UID, SID, "generate", 0.05)
    await ledger.settle(UID, SID, "generate", TokenUsage(output_tokens=1_000))
    before = await balance_of(store, UID)
    with pytest.raises(FailedPreconditionError):
        await ledger.reserve(UID, SID, "generate", 0.05)
    assert await balance_of(store, UID) == before


async def test_insufficient_balance(ledger, store, fund):
    await fund(UID, 0.02)
    with pytest.raises(ResourceExhaustedError) as exc:
        await ledger.reserve(UID, SID, "plan", 0.05)
    assert exc.value.details == {"balance": 0.02, "required": 0.05}
    assert await balance_of(store, UID) == 0.02
    assert await ledger.get_session(UID, SID) is None


async def test_rollback_exactness(ledger, store, fund):
    await fund(UID, 3.0)
    reserved = await ledger.reserve(UID, SID, "plan", 0.05)
    result = await ledger.rollback(UID, SID, "plan", reserved.charged, "model unavailable")
    assert result.restored
    assert await balance_of(store, UID) == 3.0
    session = await ledger.get_session(UID, SID)
    assert session.pending_generate == 0
    assert session.last_failed_action == "plan"
    assert session.last_failure_reason == "model unavailable"


async def test_rollback_second_phase_keeps_first_phase_pending(ledger, store, fund):
    await fund(UID, 3.0)
    await ledger.reserve(UID, SID, "plan", 0.05)
    await ledger.settle(UID, SID, "plan", TokenUsage(output_tokens=100_000))
    before = await balance_of(store, UID)
    reserved = await ledger.reserve(UID, SID, "generate", 0.5)
    assert reserved.charged == 0.45
    await ledger.rollback(UID, SID, "generate", reserved.charged, "timeout")
    assert await balance_of(store, UID) == before
    session = await ledger.get_session(UID, SID)
    assert session.pending_generate == 1
    assert session.pending_plan_reserved_credits == 0.05


async def test_overrun_may_go_negative(ledger, store, fund):
    await fund(UID, 0.1)
    await ledger.reserve(UID, SID, "plan", 0.05)
    await ledger.settle(UID, SID, "plan", TokenUsage(output_tokens=10_000))
    await ledger.reserve(UID, SID, "generate", 0.05)
    result = await ledger.settle(UID, SID, "generate", TokenUsage(output_tokens=1_000_000))
    assert result.balance == -0.91
    balance = await ledger.get_balance(UID)
    assert balance.has_negative_balance
    assert balance.debt == 0.91


async def test_concurrent_second_phase_one_fails_ordering_guard(ledger, store, fund):
    await fund(UID, 5.0)
    await ledger.reserve(UID, SID, "plan", 0.05)
    await ledger.settle(UID, SID, "plan", TokenUsage(output_tokens=1_000))
    results = await asyncio.gather(
        ledger.reserve(UID, SID, "generate", 0.2),
        ledger.reserve(UID, SID, "generate", 0.2),
        return_exceptions=True,
    )
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], FailedPreconditionError)
    assert await balance_of(store, UID) == 4.8


async def test_release_pending_pair(ledger, store, fund):
    await fund(UID, 1.0)
    await ledger.reserve(UID, SID, "evaluate", 0.2)
    result = await ledger.release_pending_pair(UID, SID, "evaluate")
    assert result.refunded == 0.2
    assert await balance_of(store, UID) == 1.0
    session = await ledger.get_session(UID, SID)
    assert session.pending_refine == 0


async def test_release_stuck_second_phase(ledger, store, fund):
    await fund(UID, 1.0)
    await ledger.reserve(UID, SID, "plan", 0.05)
    await ledger.settle(UID, SID, "plan", TokenUsage(output_tokens=100_000))
    reserved = await ledger.reserve(UID, SID, "generate", 0.2)
    assert reserved.charged == 0.15

    result = await ledger.release_pending_pair(UID, SID, "generate")
    assert result.refunded == 0.2
    assert await balance_of(store, UID) == 1.0
    session = await ledger.get_session(UID, SID)
    assert isinstance(session.plan_pair, Idle)
    assert session.pending_generate == 0

    # The late rollback of the same reservation finds nothing left to refund
    late = await ledger.rollback(UID, SID, "generate", reserved.charged, "client went away")
    assert late.restored is False
    assert late.refunded == 0.0
    assert await balance_of(store, UID) == 1.0


async def test_balances_follow_configured_precision(store, curve, fund):
    ledger = CreditLedger(store, replace(curve, decimals=2))
    await fund(UID, 1.0)
    reserved = await ledger.reserve(UID, SID, "plan", 0.1234)
    assert reserved.charged == 0.12
    assert reserved.balance == 0.88
    entries = await ledger.list_entries(UID)
    assert entries[0].amount == -0.12


async def test_ledger_entries_newest_first(ledger, fund):
    await fund(UID, 1.0)
    await ledger.reserve(UID, SID, "plan", 0.05)
    entries = await ledger.list_entries(UID)
    assert [e.reason for e in entries] == ["reserve", "purchase"]
    assert entries[0].amount == -0.05
    assert entries[0].balance_after == 0.95
    assert entries[0].session_id == SID
