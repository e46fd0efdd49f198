import asyncio

import pytest

from lp_backtester.analytics_engine.position_economics import (
    HOURS_PER_YEAR,
    calculate_il,
    estimate_fees,
    get_estimated_gas_cost,
)
from lp_backtester.core.config_loader import EngineSettings


def test_il_is_zero_when_price_unchanged():
    assert calculate_il(100.0, 100.0) == pytest.approx(0.0)


def test_il_is_symmetric_in_price_ratio():
    assert calculate_il(100.0, 200.0) == pytest.approx(calculate_il(100.0, 50.0))


def test_il_known_value():
    # r = 4: 2*2/5 - 1 = -0.2
    assert calculate_il(1.0, 4.0) == pytest.approx(0.2)


def test_il_rejects_non_positive_prices():
    with pytest.raises(ValueError):
        calculate_il(0.0, 1.0)


def test_fees_for_one_hour_in_range():
    fees = estimate_fees(1000.0, 50.0, 1.0, 500)
    assert fees == pytest.approx(1000 * 0.5 / HOURS_PER_YEAR * 20 * 0.7)


def test_fee_concentration_is_capped():
    capped = estimate_fees(1000.0, 50.0, 1.0, 100)
    at_cap = estimate_fees(1000.0, 50.0, 1.0, 500)
    assert capped == pytest.approx(at_cap)


def test_fee_concentration_wide_range():
    fees = estimate_fees(1000.0, 50.0, 1.0, 1000)
    assert fees == pytest.approx(1000 * 0.5 / HOURS_PER_YEAR * 10 * 0.7)


def test_no_fees_without_time_in_range():
    assert estimate_fees(1000.0, 50.0, 0.0, 300) == 0.0


def test_fee_overrides():
    fees = estimate_fees(1000.0, 50.0, 1.0, 1000, discount_factor=1.0, max_concentration=5.0)
    assert fees == pytest.approx(1000 * 0.5 / HOURS_PER_YEAR * 5)


def test_gas_cost_comes_from_settings():
    settings = EngineSettings(gas_cost_per_tx_usd=0.05)
    assert asyncio.run(get_estimated_gas_cost(settings)) == pytest.approx(0.05)
