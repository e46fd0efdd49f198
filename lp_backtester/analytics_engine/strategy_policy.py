"""
Rebalance decision policy and the preset strategy catalogue.

Each tick the engine asks ``decide()`` whether the position should be
re-centred. The in-range / out-of-range / pending-rebalance states are not
stored anywhere: they are derived from the current price and range.

Every ``StrategyType`` has an explicit entry in ``_POLICIES``; a new type
without one fails at import time instead of silently falling back to the
range-exit rule.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from lp_backtester.analytics_engine.models import (
    HOUR_MS,
    RangeState,
    RebalanceReason,
    StrategyDescriptor,
    StrategyPreset,
    StrategyType,
)
from lp_backtester.core.errors import InvalidConfigError

DEFAULT_RANGE_BPS = 300


@dataclass(frozen=True)
class RebalanceDecision:
    should: bool
    reason: Optional[RebalanceReason] = None


HOLD = RebalanceDecision(should=False)
FIRE_OUT_OF_RANGE = RebalanceDecision(should=True, reason=RebalanceReason.OUT_OF_RANGE)
FIRE_TIMER = RebalanceDecision(should=True, reason=RebalanceReason.TIMER)

PolicyFn = Callable[[StrategyDescriptor, bool, int], RebalanceDecision]


# ---------------------------------------------------------------------------
# Range helpers
# ---------------------------------------------------------------------------


def get_range_bps(strategy: StrategyDescriptor, default: int = DEFAULT_RANGE_BPS) -> int:
    if strategy.range_bps is not None:
        return strategy.range_bps
    if strategy.neutral_range_bps is not None:
        return strategy.neutral_range_bps
    return default


def calculate_range(price: float, range_bps: int) -> RangeState:
    """Symmetric range of +/- ``range_bps`` around ``price``."""
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    if range_bps <= 0:
        raise ValueError(f"range_bps must be positive, got {range_bps}")
    # Widths of 100% or more would put the lower bound at or below zero
    pct = min(range_bps / 10000, 0.9999)
    return RangeState(lower=price * (1 - pct), upper=price * (1 + pct))


def is_out_of_range(price: float, current_range: RangeState) -> bool:
    return not current_range.contains(price)


# ---------------------------------------------------------------------------
# Per-type policies. Range-exit checks always come before timer checks.
# ---------------------------------------------------------------------------


def _time_based(strategy: StrategyDescriptor, out_of_range: bool, elapsed_ms: int) -> RebalanceDecision:
    if elapsed_ms >= strategy.timer_duration_ms:
        return FIRE_TIMER
    return HOLD


def _out_of_range(strategy: StrategyDescriptor, out_of_range: bool, elapsed_ms: int) -> RebalanceDecision:
    if out_of_range:
        return FIRE_OUT_OF_RANGE
    # optional safety backstop
    if strategy.max_timer_ms and elapsed_ms >= strategy.max_timer_ms:
        return FIRE_TIMER
    return HOLD


def _smart_rebalance(strategy: StrategyDescriptor, out_of_range: bool, elapsed_ms: int) -> RebalanceDecision:
    if strategy.check_out_of_range and out_of_range:
        return FIRE_OUT_OF_RANGE
    if elapsed_ms >= strategy.max_timer_ms:
        return FIRE_TIMER
    return HOLD


def _range_exit(strategy: StrategyDescriptor, out_of_range: bool, elapsed_ms: int) -> RebalanceDecision:
    return FIRE_OUT_OF_RANGE if out_of_range else HOLD


_POLICIES: Dict[StrategyType, PolicyFn] = {
    StrategyType.TIME_BASED: _time_based,
    StrategyType.OUT_OF_RANGE: _out_of_range,
    StrategyType.SMART_REBALANCE: _smart_rebalance,
    # No profit / trend / divergence modelling: these only react to range exits
    StrategyType.PROFIT_TARGET: _range_exit,
    StrategyType.ASYMMETRIC_TREND: _range_exit,
    StrategyType.DIVERGENCE_PROTECTION: _range_exit,
    StrategyType.VOLATILITY_ADAPTIVE: _range_exit,
    StrategyType.FEE_VELOCITY: _range_exit,
}

_missing = set(StrategyType) - set(_POLICIES)
if _missing:  # pragma: no cover - guards future enum additions
    raise RuntimeError(f"No rebalance policy for strategy types: {sorted(t.value for t in _missing)}")


def decide(
    strategy: StrategyDescriptor,
    price: float,
    current_range: RangeState,
    elapsed_since_last_rebalance_ms: int,
    auto_rebalance: bool = True,
) -> RebalanceDecision:
    """Decide whether the position must be rebalanced at this tick.

    With ``auto_rebalance`` disabled the policy never fires; the simulation
    loop then tracks exit/return periods instead.
    """
    if not auto_rebalance:
        return HOLD
    policy = _POLICIES[strategy.type]
    return policy(strategy, is_out_of_range(price, current_range), elapsed_since_last_rebalance_ms)


# ---------------------------------------------------------------------------
# Expected APY band
# ---------------------------------------------------------------------------

_TYPE_APY_MULTIPLIER: Dict[StrategyType, float] = {
    StrategyType.TIME_BASED: 0.8,
    StrategyType.OUT_OF_RANGE: 1.2,
    StrategyType.SMART_REBALANCE: 1.2,
    StrategyType.VOLATILITY_ADAPTIVE: 1.1,
    StrategyType.ASYMMETRIC_TREND: 1.1,
}


def calculate_expected_apy(base_apy: float, strategy: StrategyDescriptor) -> Dict[str, float]:
    """Rough min/max APY band for a strategy, given the pool's base APY."""
    range_multiplier = 1000 / max(get_range_bps(strategy), 50)
    multiplier = range_multiplier * _TYPE_APY_MULTIPLIER.get(strategy.type, 1.0)
    return {
        "min": base_apy * multiplier * 0.7,
        "max": base_apy * multiplier * 1.3,
    }


# ---------------------------------------------------------------------------
# Preset catalogue
# ---------------------------------------------------------------------------

STRATEGY_PRESETS: List[StrategyPreset] = [
    StrategyPreset(
        id="smart-rebalance",
        name="Smart Rebalancing",
        description="Best overall strategy - combines out-of-range detection with safety features",
        risk_level="low",
        expected_apr_multiplier="3-8x",
        gas_cost_level="medium",
        best_for=("All pairs", "Most users", "Balanced approach"),
        strategy=StrategyDescriptor(
            id="smart-rebalance-default",
            name="Smart Rebalancing",
            type=StrategyType.SMART_REBALANCE,
            range_bps=300,
            check_out_of_range=True,
            max_timer_ms=24 * HOUR_MS,
            max_divergence_loss_percent=3,
            min_time_between_rebalances_ms=HOUR_MS // 2,
        ),
    ),
    StrategyPreset(
        id="aggressive-yield",
        name="Aggressive Yield",
        description="Maximum APY with tight ranges and frequent rebalancing",
        risk_level="high",
        expected_apr_multiplier="5-15x",
        gas_cost_level="high",
        best_for=("Stablecoins", "Low volatility", "Max returns"),
        strategy=StrategyDescriptor(
            id="aggressive-default",
            name="Aggressive Yield",
            type=StrategyType.TIME_BASED,
            timer_duration_ms=2 * HOUR_MS,
            range_bps=150,
        ),
    ),
    StrategyPreset(
        id="conservative",
        name="Conservative",
        description="Wider ranges, less frequent rebalancing, built-in profit taking",
        risk_level="low",
        expected_apr_multiplier="1.5-3x",
        gas_cost_level="low",
        best_for=("Risk-averse", "Volatile pairs", "Long-term"),
        strategy=StrategyDescriptor(
            id="conservative-default",
            name="Conservative",
            type=StrategyType.SMART_REBALANCE,
            range_bps=500,
            check_out_of_range=True,
            max_timer_ms=12 * HOUR_MS,
            max_divergence_loss_percent=2,
            min_time_between_rebalances_ms=4 * HOUR_MS,
        ),
    ),
    StrategyPreset(
        id="stablecoin-farmer",
        name="Stablecoin Farmer",
        description="Ultra-tight ranges optimized for stablecoin pairs",
        risk_level="low",
        expected_apr_multiplier="10-30x",
        gas_cost_level="medium",
        best_for=("USDC/USDT", "Stablecoins", "Minimal IL"),
        strategy=StrategyDescriptor(
            id="stablecoin-default",
            name="Stablecoin Farmer",
            type=StrategyType.SMART_REBALANCE,
            range_bps=50,
            check_out_of_range=True,
            max_timer_ms=8 * HOUR_MS,
            max_divergence_loss_percent=0.5,
            min_time_between_rebalances_ms=HOUR_MS,
        ),
    ),
    StrategyPreset(
        id="trend-follower",
        name="Trend Follower",
        description="Asymmetric ranges that follow market trends",
        risk_level="medium",
        expected_apr_multiplier="2-6x",
        gas_cost_level="medium",
        best_for=("Trending markets", "Directional bias", "Advanced users"),
        strategy=StrategyDescriptor(
            id="trend-default",
            name="Trend Follower",
            type=StrategyType.ASYMMETRIC_TREND,
            neutral_range_bps=300,
        ),
    ),
]


def get_strategy_preset(preset_id: str) -> Optional[StrategyPreset]:
    for preset in STRATEGY_PRESETS:
        if preset.id == preset_id:
            return preset
    return None


def select_presets(preset_ids: Optional[Sequence[str]] = None) -> List[StrategyPreset]:
    """Presets for the given ids, in catalogue order; all presets when ids is None."""
    if preset_ids is None:
        return list(STRATEGY_PRESETS)
    unknown = [pid for pid in preset_ids if get_strategy_preset(pid) is None]
    if unknown:
        raise InvalidConfigError(f"Unknown strategy preset(s): {', '.join(unknown)}")
    wanted = set(preset_ids)
    return [p for p in STRATEGY_PRESETS if p.id in wanted]
