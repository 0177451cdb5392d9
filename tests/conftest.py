import asyncio
import os
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory store, no external services
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("FIREBASE_PROJECT_ID", "creditmeter-test")

from creditmeter.integrations.gemini import GenerationChunk, GenerationResult  # noqa: E402
from creditmeter.integrations.play_store import StorePurchase  # noqa: E402
from creditmeter.services.ledger import CreditLedger, apply_credit_delta, load_balance  # noqa: E402
from creditmeter.services.pricing import PricingCurve, TokenUsage  # noqa: E402
from creditmeter.store.memory import MemoryStore  # noqa: E402


class FakeGenerationClient:
    """Scripted model: fixed input count, fixed usage, optional failure."""

    def __init__(
        self,
        input_tokens: int = 1_000,
        usage: TokenUsage | None = TokenUsage(input_tokens=1_000, output_tokens=2_000),
        text: str = "<svg/>",
        thoughts: str | None = "thinking",
        error: Exception | None = None,
        chunk_delay: float = 0.0,
    ):
        self.input_tokens = input_tokens
        self.usage = usage
        self.text = text
        self.thoughts = thoughts
        self.error = error
        self.chunk_delay = chunk_delay
        self.calls: list[str] = []

    async def count_tokens(self, action: str, payload: dict[str, Any]) -> int:
        return self.input_tokens

    async def generate(self, action: str, payload: dict[str, Any]) -> GenerationResult:
        self.calls.append(action)
        if self.error:
            raise self.error
        return GenerationResult(text=self.text, thoughts=self.thoughts, usage=self.usage)

    async def stream(self, action: str, payload: dict[str, Any]):
        self.calls.append(action)
        if self.thoughts:
            yield GenerationChunk(kind="thought", text=self.thoughts)
        await asyncio.sleep(self.chunk_delay)
        if self.error:
            raise self.error
        for piece in (self.text[: len(self.text) // 2], self.text[len(self.text) // 2 :]):
            yield GenerationChunk(kind="output", text=piece)
        yield GenerationChunk(kind="usage", usage=self.usage)


class FakeVerifier:
    def __init__(
        self,
        purchase: StorePurchase | None = None,
        get_error: Exception | None = None,
        consume_error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.purchase = purchase or StorePurchase(purchase_state=0, order_id="GPA.1234")
        self.get_error = get_error
        self.consume_error = consume_error
        self.delay = delay
        self.get_calls = 0
        self.consumed: list[str] = []

    async def get_purchase(self, product_id: str, purchase_token: str) -> StorePurchase:
        self.get_calls += 1
        await asyncio.sleep(self.delay)
        if self.get_error:
            raise self.get_error
        return self.purchase

    async def consume(self, product_id: str, purchase_token: str) -> None:
        if self.consume_error:
            raise self.consume_error
        self.consumed.append(purchase_token)


class FakeIdentity:
    def __init__(self):
        self.deleted: list[str] = []

    async def delete_user(self, uid: str) -> None:
        self.deleted.append(uid)


@pytest.fixture
def curve() -> PricingCurve:
    """1 credit per USD, output-only pricing, no margin or baseline."""
    return PricingCurve(
        input_rate_usd_per_token=0.0,
        output_rate_usd_per_token=1e-6,
        net_credit_price_usd=1.0,
        safety_margin_rate=0.0,
        baseline_credits=0.0,
        decay_credits=1.0,
        min_billed_credits=0.01,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def ledger(store, curve) -> CreditLedger:
    return CreditLedger(store, curve)


@pytest.fixture
def fund(store):
    async def _fund(uid: str, amount: float) -> float:
        async def _credit(tx):
            balance = await load_balance(tx, uid)
            apply_credit_delta(tx, balance, amount, "purchase", reference_id="seed")
            return balance.balance

        return await store.run_transaction(_credit)

    return _fund


async def balance_of(store, uid: str) -> float:
    doc = await store.get("balances", uid)
    return doc["balance"] if doc else 0.0


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from creditmeter.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
