"""Data model of the backtesting engine.

All records are frozen dataclasses: they are created once per run and never
edited afterwards. Logs such as the rebalance list are plain lists that only
ever get appended to while a run is in progress.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from lp_backtester.core.errors import InvalidConfigError

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
YEAR_MS = 365 * DAY_MS


class StrategyType(str, Enum):
    TIME_BASED = "time-based"
    OUT_OF_RANGE = "out-of-range"
    SMART_REBALANCE = "smart-rebalance"
    PROFIT_TARGET = "profit-target"
    ASYMMETRIC_TREND = "asymmetric-trend"
    DIVERGENCE_PROTECTION = "divergence-protection"
    VOLATILITY_ADAPTIVE = "volatility-adaptive"
    FEE_VELOCITY = "fee-velocity"


class RebalanceReason(str, Enum):
    POSITION_OPENED = "position-opened"
    OUT_OF_RANGE = "out-of-range"
    TIMER = "timer"
    PRICE_EXIT_RANGE = "price-exit-range"
    RETURN_TO_RANGE = "return-to-range"


class DataSource(str, Enum):
    BINANCE = "binance"
    DEFILLAMA = "defillama"
    COINGECKO = "coingecko"
    SYNTHETIC = "synthetic"
    NONE = "none"


class DataQuality(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    SIMULATED = "simulated"


@dataclass(frozen=True)
class PricePoint:
    timestamp: int
    price: float


@dataclass(frozen=True)
class StrategyDescriptor:
    type: StrategyType
    range_bps: Optional[int] = None
    timer_duration_ms: Optional[int] = None
    max_timer_ms: Optional[int] = None
    check_out_of_range: bool = True
    max_divergence_loss_percent: Optional[float] = None
    min_time_between_rebalances_ms: Optional[int] = None
    # asymmetric-trend presets carry a neutral width instead of range_bps
    neutral_range_bps: Optional[int] = None
    id: str = ""
    name: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.type, StrategyType):
            try:
                object.__setattr__(self, "type", StrategyType(self.type))
            except ValueError as exc:
                raise InvalidConfigError(f"Unknown strategy type: {self.type!r}") from exc
        for attr in ("range_bps", "neutral_range_bps"):
            value = getattr(self, attr)
            if value is not None and value <= 0:
                raise InvalidConfigError(f"{attr} must be positive, got {value}")
        if self.type is StrategyType.TIME_BASED and self.timer_duration_ms is None:
            raise InvalidConfigError("time-based strategy requires timer_duration_ms")
        if self.type is StrategyType.SMART_REBALANCE and self.max_timer_ms is None:
            raise InvalidConfigError("smart-rebalance strategy requires max_timer_ms")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StrategyDescriptor":
        """Build a descriptor from camelCase or snake_case keys."""
        aliases = {
            "rangeBps": "range_bps",
            "timerDurationMs": "timer_duration_ms",
            "maxTimerMs": "max_timer_ms",
            "checkOutOfRange": "check_out_of_range",
            "maxDivergenceLossPercent": "max_divergence_loss_percent",
            "minTimeBetweenRebalancesMs": "min_time_between_rebalances_ms",
            "neutralRangeBps": "neutral_range_bps",
        }
        known = set(cls.__dataclass_fields__)
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = aliases.get(key, key)
            if name in known:
                kwargs[name] = value
        if "type" not in kwargs:
            raise InvalidConfigError("Strategy descriptor requires a 'type'")
        return cls(**kwargs)


@dataclass(frozen=True)
class StrategyPreset:
    id: str
    name: str
    description: str
    risk_level: str
    strategy: StrategyDescriptor
    expected_apr_multiplier: str = ""
    gas_cost_level: str = "medium"
    best_for: Tuple[str, ...] = ()


@dataclass(frozen=True)
class BacktestConfig:
    pool_id: str
    token_a: str
    token_b: str
    strategy: StrategyDescriptor
    initial_capital: float
    start_time: int
    end_time: int
    pool_apr: Optional[float] = None
    auto_rebalance: bool = True
    allow_synthetic: bool = True

    def __post_init__(self) -> None:
        if not self.token_a or not self.token_b:
            raise InvalidConfigError("token_a and token_b are required")
        if self.start_time >= self.end_time:
            raise InvalidConfigError(
                f"start_time ({self.start_time}) must be before end_time ({self.end_time})"
            )
        if not self.initial_capital > 0:
            raise InvalidConfigError(f"initial_capital must be positive, got {self.initial_capital}")
        if self.pool_apr is not None and self.pool_apr < 0:
            raise InvalidConfigError(f"pool_apr must not be negative, got {self.pool_apr}")


@dataclass(frozen=True)
class RangeState:
    lower: float
    upper: float

    def contains(self, price: float) -> bool:
        return self.lower <= price <= self.upper


# Placeholder "old range" for the position-opened event
EMPTY_RANGE = RangeState(lower=0.0, upper=0.0)


@dataclass(frozen=True)
class RangeSnapshot:
    timestamp: int
    lower: float
    upper: float


@dataclass(frozen=True)
class RebalanceEvent:
    timestamp: int
    price: float
    reason: RebalanceReason
    old_range: RangeState
    new_range: RangeState
    fees_collected: float
    gas_cost: float
    position_value: float
    out_of_range_duration_ms: Optional[int] = None
    in_range_duration_ms: Optional[int] = None


@dataclass(frozen=True)
class OutOfRangePeriod:
    start_timestamp: int
    end_timestamp: int
    duration_ms: int
    exit_price: float
    did_return: bool
    return_price: Optional[float] = None


@dataclass(frozen=True)
class EquityPoint:
    timestamp: int
    value: float


@dataclass(frozen=True)
class BacktestResult:
    config: BacktestConfig
    data_source: DataSource
    data_quality: DataQuality
    warnings: List[str]
    final_value: float
    total_return: float
    total_return_percent: float
    fees_earned: float
    impermanent_loss: float
    gas_costs: float
    net_pnl: float
    max_drawdown: float
    max_drawdown_percent: float
    sharpe_ratio: float
    time_in_range: float
    rebalance_count: int
    avg_time_per_cycle: float
    rebalances: List[RebalanceEvent] = field(default_factory=list)
    out_of_range_periods: List[OutOfRangePeriod] = field(default_factory=list)
    equity_curve: List[EquityPoint] = field(default_factory=list)
    price_data: List[PricePoint] = field(default_factory=list)
    ranges: List[RangeSnapshot] = field(default_factory=list)


@dataclass(frozen=True)
class Percentiles:
    p5: float
    p25: float
    p50: float
    p75: float
    p95: float


@dataclass(frozen=True)
class MonteCarloResult:
    simulations: int
    percentiles: Percentiles
    mean: float
    std_dev: float
    best_case: float
    worst_case: float
    probability_of_profit: float


@dataclass(frozen=True)
class StrategyComparison:
    strategy_id: str
    strategy_name: str
    result: BacktestResult


@dataclass(frozen=True)
class TimePreset:
    id: str
    label: str
    ms: int


TIME_PRESETS: Tuple[TimePreset, ...] = (
    TimePreset("1h", "1 Hour", HOUR_MS),
    TimePreset("3h", "3 Hours", 3 * HOUR_MS),
    TimePreset("1d", "1 Day", DAY_MS),
    TimePreset("7d", "7 Days", 7 * DAY_MS),
    TimePreset("30d", "30 Days", 30 * DAY_MS),
    # custom windows are given explicitly by the caller
    TimePreset("custom", "Custom", 0),
)
