"""USD cost -> credit charge conversion.

Credits are tracked with fractional precision (PricingCurve.decimals, 3 unless
configured otherwise); the UI only ever sees whole "display" credits rounded up.
"""

import math
from dataclasses import dataclass

from creditmeter.core.config import Settings, get_settings
from creditmeter.core.exceptions import FailedPreconditionError

CREDIT_PRECISION_DECIMALS = 3

ACTIONS = ("plan", "generate", "evaluate", "refine")
FIRST_PHASE = {"plan": "plan", "evaluate": "evaluate"}
SECOND_PHASE = {"generate": "plan", "refine": "evaluate"}


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    thought_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens + self.thought_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            self.input_tokens + other.input_tokens,
            self.output_tokens + other.output_tokens,
            self.thought_tokens + other.thought_tokens,
        )


@dataclass(frozen=True)
class CreditQuote:
    cost_usd: float
    raw_credits: float
    billed_credits: float
    display_credits: int


def round_credits(value: float, decimals: int = CREDIT_PRECISION_DECIMALS) -> float:
    """Scale, round half-even, rescale."""
    scale = 10 ** decimals
    return round(value * scale) / scale


def ceil_credits(value: float, decimals: int = CREDIT_PRECISION_DECIMALS) -> float:
    scale = 10 ** decimals
    # Drop float noise below the precision before taking the ceiling (0.734 * 1000 = 734.0000000000001)
    return math.ceil(round(value * scale, 6)) / scale


def display_credits(billed: float) -> int:
    return max(1, math.ceil(round(billed, 6)))


@dataclass(frozen=True)
class PricingCurve:
    input_rate_usd_per_token: float
    output_rate_usd_per_token: float
    net_credit_price_usd: float
    safety_margin_rate: float = 0.0
    baseline_credits: float = 0.0
    decay_credits: float = 1.0
    min_billed_credits: float = 0.01
    decimals: int = CREDIT_PRECISION_DECIMALS

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PricingCurve":
        s = settings or get_settings()
        net = s.credit_retail_price_usd / (1 + s.tax_rate) * (1 - s.platform_fee_rate)
        return cls(
            input_rate_usd_per_token=s.input_rate_usd_per_token,
            output_rate_usd_per_token=s.output_rate_usd_per_token,
            net_credit_price_usd=net,
            safety_margin_rate=s.safety_margin_rate,
            baseline_credits=s.baseline_credits,
            decay_credits=s.decay_credits,
            min_billed_credits=s.min_billed_credits,
            decimals=s.credit_precision_decimals,
        )

    def validate(self) -> None:
        if self.net_credit_price_usd <= 0 or not math.isfinite(self.net_credit_price_usd):
            raise FailedPreconditionError("Pricing is misconfigured: net credit price must be positive")
        if self.input_rate_usd_per_token < 0 or self.output_rate_usd_per_token < 0:
            raise FailedPreconditionError("Pricing is misconfigured: token rates must not be negative")
        if self.decay_credits <= 0:
            raise FailedPreconditionError("Pricing is misconfigured: decay must be positive")

    def cost_usd(self, usage: TokenUsage) -> float:
        return (
            usage.input_tokens * self.input_rate_usd_per_token
            + (usage.output_tokens + usage.thought_tokens) * self.output_rate_usd_per_token
        )

    def raw_credits(self, cost_usd: float) -> float:
        self.validate()
        return max(0.0, cost_usd) / self.net_credit_price_usd

    def smoothed_credits(self, raw: float) -> float:
        # The exponential term sets a floor on cheap calls and fades out as cost grows
        return raw * (1 + self.safety_margin_rate) + self.baseline_credits * math.exp(-raw / self.decay_credits)

    def billed_credits(self, cost_usd: float) -> float:
        smoothed = self.smoothed_credits(self.raw_credits(cost_usd))
        return max(self.min_billed_credits, ceil_credits(smoothed, self.decimals))

    def quote_cost(self, cost_usd: float) -> CreditQuote:
        raw = self.raw_credits(cost_usd)
        billed = self.billed_credits(cost_usd)
        return CreditQuote(
            cost_usd=cost_usd,
            raw_credits=round_credits(raw, self.decimals),
            billed_credits=billed,
            display_credits=display_credits(billed),
        )

    def quote(self, usage: TokenUsage) -> CreditQuote:
        return self.quote_cost(self.cost_usd(usage))
