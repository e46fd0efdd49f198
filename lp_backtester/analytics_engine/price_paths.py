"""Synthetic price path generation (geometric Brownian motion).

Normal draws come from a ``NormalSource`` so tests can inject fixed values.
The default source is a Box-Muller transform over numpy uniform draws.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

import numpy as np

from lp_backtester.analytics_engine.models import HOUR_MS, PricePoint


class NormalSource(Protocol):
    def next(self) -> float:
        """Return one standard normal variate."""


class BoxMullerNormals:
    """Standard normal draws via Box-Muller on a seedable numpy generator."""

    def __init__(self, seed: Optional[int] = None, rng: Optional[np.random.Generator] = None):
        self._rng = rng if rng is not None else np.random.default_rng(seed)

    def next(self) -> float:
        # random() is in [0, 1); shift u1 into (0, 1] so log() stays finite
        u1 = 1.0 - float(self._rng.random())
        u2 = float(self._rng.random())
        return math.sqrt(-2.0 * math.log(u1)) * math.cos(2.0 * math.pi * u2)


class FixedNormals:
    """Replays a fixed sequence of draws, cycling when exhausted."""

    def __init__(self, values: Sequence[float]):
        if not values:
            raise ValueError("FixedNormals needs at least one value")
        self._values = list(values)
        self._idx = 0

    def next(self) -> float:
        value = self._values[self._idx % len(self._values)]
        self._idx += 1
        return value


@dataclass(frozen=True)
class PathCalibration:
    mean_log_return: float
    volatility: float
    step_ms: int
    start_price: float
    length: int


def log_returns(prices: Sequence[PricePoint]) -> np.ndarray:
    values = np.array([p.price for p in prices], dtype=float)
    return np.diff(np.log(values))


def median_step_ms(prices: Sequence[PricePoint], default: int = HOUR_MS) -> int:
    if len(prices) < 2:
        return default
    steps = np.diff(np.array([p.timestamp for p in prices], dtype=np.int64))
    steps = steps[steps > 0]
    if steps.size == 0:
        return default
    return int(np.median(steps))


def calibrate(prices: Sequence[PricePoint]) -> PathCalibration:
    """Sample mean and (population) std dev of per-step log returns."""
    returns = log_returns(prices)
    return PathCalibration(
        mean_log_return=float(returns.mean()),
        volatility=float(returns.std()),
        step_ms=median_step_ms(prices),
        start_price=prices[0].price,
        length=len(prices),
    )


def generate_gbm_path(
    calibration: PathCalibration,
    start_timestamp: int,
    normals: NormalSource,
) -> List[PricePoint]:
    """One GBM path with the calibration's length, step size and start price."""
    price = calibration.start_price
    path = [PricePoint(timestamp=start_timestamp, price=price)]
    for i in range(1, calibration.length):
        z = normals.next()
        price = price * math.exp(calibration.mean_log_return + calibration.volatility * z)
        path.append(PricePoint(timestamp=start_timestamp + i * calibration.step_ms, price=price))
    return path


# Start price (USD) and daily volatility used when no market data is available
TOKEN_PARAMS: Dict[str, Dict[str, float]] = {
    "SUI": {"start_price": 4.0, "daily_vol": 0.05},
    "USDC": {"start_price": 1.0, "daily_vol": 0.001},
    "USDT": {"start_price": 1.0, "daily_vol": 0.001},
    "WETH": {"start_price": 3500.0, "daily_vol": 0.04},
    "ETH": {"start_price": 3500.0, "daily_vol": 0.04},
    "WBTC": {"start_price": 95000.0, "daily_vol": 0.035},
    "BTC": {"start_price": 95000.0, "daily_vol": 0.035},
    "CETUS": {"start_price": 0.25, "daily_vol": 0.08},
    "DEEP": {"start_price": 0.15, "daily_vol": 0.10},
}

_DEFAULT_BASE_PARAMS = {"start_price": 1.0, "daily_vol": 0.05}
_DEFAULT_QUOTE_PARAMS = {"start_price": 1.0, "daily_vol": 0.001}

MEAN_REVERSION = 0.001


def generate_synthetic_prices(
    token_a: str,
    token_b: str,
    start_time: int,
    end_time: int,
    normals: Optional[NormalSource] = None,
    step_ms: int = HOUR_MS,
) -> List[PricePoint]:
    """Hourly tokenA/tokenB path from per-token volatility estimates.

    Uncorrelated assets are assumed, so the pair volatility is the root sum of
    squares. A mild pull back toward the starting price keeps long windows
    from drifting away.
    """
    normals = normals or BoxMullerNormals()
    params_a = TOKEN_PARAMS.get(token_a.upper(), _DEFAULT_BASE_PARAMS)
    params_b = TOKEN_PARAMS.get(token_b.upper(), _DEFAULT_QUOTE_PARAMS)

    start_price = params_a["start_price"] / params_b["start_price"]
    daily_vol = math.sqrt(params_a["daily_vol"] ** 2 + params_b["daily_vol"] ** 2)
    step_vol = daily_vol * math.sqrt(step_ms / (24 * HOUR_MS))

    prices: List[PricePoint] = []
    price = start_price
    timestamp = start_time
    while timestamp <= end_time:
        drift = -MEAN_REVERSION * (price / start_price - 1)
        price = price * math.exp(drift + step_vol * normals.next())
        prices.append(PricePoint(timestamp=timestamp, price=price))
        timestamp += step_ms
    return prices
