from typing import List, Optional, Sequence

import pytest

from lp_backtester.analytics_engine.models import (
    HOUR_MS,
    BacktestConfig,
    DataSource,
    PricePoint,
    StrategyDescriptor,
    StrategyType,
)
from lp_backtester.core.metrics import reset_metrics
from lp_backtester.data_collector.price_feed import PriceFeedResult

# 2023-11-14 22:00 UTC, hour aligned
T0 = 1_699_999_200_000


class StaticResolver:
    """Resolver stand-in that always returns the same series."""

    def __init__(self, prices: Sequence[PricePoint], source: DataSource = DataSource.BINANCE, error: Optional[str] = None):
        self.prices = list(prices)
        self.source = source
        self.error = error
        self.calls: List[dict] = []

    async def resolve(self, token_a, token_b, start_ms, end_ms, allow_synthetic=False):
        self.calls.append(
            {
                "token_a": token_a,
                "token_b": token_b,
                "start_ms": start_ms,
                "end_ms": end_ms,
                "allow_synthetic": allow_synthetic,
            }
        )
        if self.source is DataSource.NONE:
            return PriceFeedResult(prices=[], source=DataSource.NONE, error=self.error or "no data")
        return PriceFeedResult(prices=list(self.prices), source=self.source, error=self.error)


def hourly(prices: Sequence[float], start: int = T0, step_ms: int = HOUR_MS) -> List[PricePoint]:
    return [PricePoint(timestamp=start + i * step_ms, price=float(p)) for i, p in enumerate(prices)]


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def make_series():
    return hourly


@pytest.fixture
def make_resolver():
    return StaticResolver


@pytest.fixture
def make_config():
    def _make(strategy: Optional[StrategyDescriptor] = None, **overrides) -> BacktestConfig:
        params = dict(
            pool_id="0xpool",
            token_a="SUI",
            token_b="USDC",
            strategy=strategy
            or StrategyDescriptor(type=StrategyType.OUT_OF_RANGE, range_bps=300),
            initial_capital=1000.0,
            start_time=T0,
            end_time=T0 + 24 * HOUR_MS,
            pool_apr=50.0,
            auto_rebalance=True,
            allow_synthetic=False,
        )
        params.update(overrides)
        return BacktestConfig(**params)

    return _make
