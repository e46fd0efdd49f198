"""Fee, impermanent loss and gas estimates for a concentrated-liquidity position.

These are explanatory estimates, not ledger-accurate accounting.
"""
from __future__ import annotations

import math

from lp_backtester.core.config_loader import EngineSettings

HOURS_PER_YEAR = 365 * 24


def estimate_fees(
    capital: float,
    pool_apr: float,
    hours_in_range: float,
    range_bps: int,
    *,
    discount_factor: float = 0.7,
    max_concentration: float = 20.0,
) -> float:
    """
    Fees earned by ``capital`` over ``hours_in_range`` hours in range.

    A narrower range takes a larger share of pool fees while in range:
    10000 bps is treated as full range, so the multiplier is
    ``10000 / range_bps``, capped at ``max_concentration``. The result is
    discounted by ``discount_factor``.
    """
    if hours_in_range <= 0 or capital <= 0:
        return 0.0
    hourly_rate = pool_apr / 100 / HOURS_PER_YEAR
    concentration = min(max_concentration, 10000 / range_bps)
    return capital * hourly_rate * hours_in_range * concentration * discount_factor


def calculate_il(initial_price: float, current_price: float) -> float:
    """Constant-product divergence loss as a fraction of position value.

    ``|2*sqrt(r)/(1+r) - 1|`` with ``r = current/initial``. Zero when the
    price is unchanged and identical for ``r`` and ``1/r``.
    """
    if initial_price <= 0 or current_price <= 0:
        raise ValueError("prices must be positive")
    ratio = current_price / initial_price
    return abs(2 * math.sqrt(ratio) / (1 + ratio) - 1)


async def get_estimated_gas_cost(settings: EngineSettings) -> float:
    # Sui transactions cost roughly $0.001-0.02; a flat conservative value is used
    return settings.gas_cost_per_tx_usd
