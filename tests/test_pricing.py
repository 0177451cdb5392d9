"""Unit tests for the USD -> credits curve."""

import math

import pytest

from creditmeter.core.config import Settings
from creditmeter.core.exceptions import FailedPreconditionError
from creditmeter.services.pricing import (
    PricingCurve,
    TokenUsage,
    ceil_credits,
    display_credits,
    round_credits,
)


def test_cost_usd_bills_thought_tokens_at_output_rate():
    curve = PricingCurve(
        input_rate_usd_per_token=0.30 / 1_000_000,
        output_rate_usd_per_token=2.50 / 1_000_000,
        net_credit_price_usd=1.0,
    )
    usage = TokenUsage(input_tokens=1_000_000, output_tokens=200_000, thought_tokens=200_000)
    assert curve.cost_usd(usage) == pytest.approx(0.30 + 1.0)


def test_net_credit_price_from_settings():
    settings = Settings(credit_retail_price_usd=0.50, platform_fee_rate=0.15, tax_rate=0.0)
    curve = PricingCurve.from_settings(settings)
    assert curve.net_credit_price_usd == pytest.approx(0.425)


def test_tax_reduces_net_price():
    settings = Settings(credit_retail_price_usd=0.50, platform_fee_rate=0.15, tax_rate=0.25)
    curve = PricingCurve.from_settings(settings)
    assert curve.net_credit_price_usd == pytest.approx(0.34)


def test_safety_margin_and_baseline():
    curve = PricingCurve.from_settings(Settings())
    quote = curve.quote_cost(0.425)  # exactly one raw credit
    assert quote.raw_credits == 1.0
    expected = 1.2 + 0.05 * math.exp(-4)
    assert quote.billed_credits == math.ceil(expected * 1000) / 1000
    assert quote.billed_credits == 1.201
    assert quote.display_credits == 2


def test_minimum_charge_floor():
    curve = PricingCurve(
        input_rate_usd_per_token=1e-9,
        output_rate_usd_per_token=1e-9,
        net_credit_price_usd=1.0,
        min_billed_credits=0.01,
    )
    quote = curve.quote(TokenUsage(input_tokens=1, output_tokens=1))
    assert quote.billed_credits >= 0.01
    assert quote.display_credits >= 1


def test_baseline_floors_near_zero_cost():
    curve = PricingCurve.from_settings(Settings())
    assert curve.billed_credits(0.0) == 0.05


def test_ceil_ignores_float_noise():
    assert ceil_credits(0.234 + 0.5) == 0.734
    assert ceil_credits(0.7341) == 0.735


def test_round_and_display():
    assert round_credits(0.1 + 0.2) == 0.3
    assert display_credits(0.01) == 1
    assert display_credits(2.0) == 2
    assert display_credits(2.001) == 3


@pytest.mark.parametrize(
    "kwargs",
    [
        {"net_credit_price_usd": 0.0},
        {"net_credit_price_usd": -1.0},
        {"input_rate_usd_per_token": -1e-6},
        {"decay_credits": 0.0},
    ],
)
def test_misconfigured_curve_fails_precondition(kwargs):
    params = {
        "input_rate_usd_per_token": 1e-6,
        "output_rate_usd_per_token": 1e-6,
        "net_credit_price_usd": 1.0,
    }
    params.update(kwargs)
    curve = PricingCurve(**params)
    with pytest.raises(FailedPreconditionError):
        curve.validate()
    with pytest.raises(FailedPreconditionError):
        curve.billed_credits(0.01)
