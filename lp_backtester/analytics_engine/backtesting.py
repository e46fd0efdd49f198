"""
Backtesting engine for concentrated-liquidity position strategies.

- Resolves a historical price series for the pair (see data_collector.price_feed).
- Opens a position around the first price and walks the series step by step:
  range checks, fee accrual, impermanent loss, strategy-driven rebalances.
- Produces a BacktestResult with an equity curve, the rebalance log,
  out-of-range periods and risk metrics.

The loop itself (``simulate``) is synchronous and deterministic; the only
suspension point of ``run_backtest`` is price resolution.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from lp_backtester.analytics_engine.models import (
    EMPTY_RANGE,
    HOUR_MS,
    YEAR_MS,
    BacktestConfig,
    BacktestResult,
    DataQuality,
    DataSource,
    EquityPoint,
    OutOfRangePeriod,
    PricePoint,
    RangeSnapshot,
    RebalanceEvent,
    RebalanceReason,
)
from lp_backtester.analytics_engine.position_economics import (
    calculate_il,
    estimate_fees,
    get_estimated_gas_cost,
)
from lp_backtester.analytics_engine.price_paths import median_step_ms
from lp_backtester.analytics_engine.strategy_policy import calculate_range, decide, get_range_bps
from lp_backtester.core.config_loader import EngineSettings, load_engine_settings
from lp_backtester.core.errors import InsufficientDataError, PriceDataUnavailableError
from lp_backtester.core.metrics import increment_metric, timed
from lp_backtester.core.structured_logging import bind_events
from lp_backtester.data_collector.price_feed import MIN_POINTS, PriceFeedResolver

logger = logging.getLogger(__name__)

SYNTHETIC_DATA_WARNING = (
    "SIMULATED DATA: Real price data unavailable. Results are for illustration only "
    "and may not reflect actual market conditions."
)
ESTIMATED_FEES_WARNING = (
    "Fee earnings are estimated based on pool APR and concentration. Actual fees may vary."
)
LIMITED_DATA_WARNING = "Limited price data available. Results may be less accurate."


@dataclass
class _OpenPeriod:
    start_timestamp: int
    exit_price: float


def annualized_sharpe(returns: Sequence[float], step_ms: int) -> float:
    """Mean/std of per-step returns, scaled by sqrt(steps per year)."""
    if len(returns) < 2 or step_ms <= 0:
        return 0.0
    arr = np.asarray(returns, dtype=float)
    std = float(arr.std())
    if std <= 1e-12:
        return 0.0
    return float(arr.mean()) / std * math.sqrt(YEAR_MS / step_ms)


def classify_data_quality(points: int, source: DataSource, settings: EngineSettings) -> DataQuality:
    if source is DataSource.SYNTHETIC:
        return DataQuality.SIMULATED
    if points < settings.limited_data_points:
        return DataQuality.LOW
    if points < settings.medium_data_points:
        return DataQuality.MEDIUM
    return DataQuality.HIGH


def build_warnings(points: int, source: DataSource, settings: EngineSettings) -> List[str]:
    warnings: List[str] = []
    if source is DataSource.SYNTHETIC:
        warnings.append(SYNTHETIC_DATA_WARNING)
    warnings.append(ESTIMATED_FEES_WARNING)
    if points < settings.limited_data_points and source is not DataSource.SYNTHETIC:
        warnings.append(LIMITED_DATA_WARNING)
    return warnings


def simulate(
    config: BacktestConfig,
    price_data: Sequence[PricePoint],
    data_source: DataSource,
    *,
    settings: Optional[EngineSettings] = None,
    gas_cost_per_tx: Optional[float] = None,
    extra_warnings: Sequence[str] = (),
) -> BacktestResult:
    """Run the strategy over an already resolved price series."""
    settings = settings or EngineSettings()
    if len(price_data) < MIN_POINTS:
        raise InsufficientDataError(MIN_POINTS, len(price_data), data_source.value)

    prices = list(price_data)
    gas_per_tx = settings.gas_cost_per_tx_usd if gas_cost_per_tx is None else gas_cost_per_tx
    pool_apr = settings.default_pool_apr if config.pool_apr is None else config.pool_apr
    strategy = config.strategy
    range_bps = get_range_bps(strategy, settings.default_range_bps)
    auto_rebalance = config.auto_rebalance

    first = prices[0]
    initial_price = first.price
    current_range = calculate_range(initial_price, range_bps)

    # Opening the position is itself a transaction
    current_value = config.initial_capital - gas_per_tx
    total_fees = 0.0
    total_gas = gas_per_tx
    last_rebalance_ts = first.timestamp
    time_in_range_ms = 0
    time_out_of_range_ms = 0

    rebalances: List[RebalanceEvent] = [
        RebalanceEvent(
            timestamp=first.timestamp,
            price=initial_price,
            reason=RebalanceReason.POSITION_OPENED,
            old_range=EMPTY_RANGE,
            new_range=current_range,
            fees_collected=0.0,
            gas_cost=gas_per_tx,
            position_value=current_value,
        )
    ]
    ranges: List[RangeSnapshot] = [
        RangeSnapshot(timestamp=first.timestamp, lower=current_range.lower, upper=current_range.upper)
    ]
    out_of_range_periods: List[OutOfRangePeriod] = []
    equity_curve: List[EquityPoint] = [EquityPoint(timestamp=first.timestamp, value=current_value)]

    open_period: Optional[_OpenPeriod] = None
    was_in_range = True
    in_range_since = first.timestamp

    peak_value = current_value
    max_drawdown = 0.0
    max_drawdown_pct = 0.0
    returns: List[float] = []
    prev_equity = current_value

    for prev_point, point in zip(prices, prices[1:]):
        dt_ms = point.timestamp - prev_point.timestamp
        in_range = current_range.contains(point.price)

        if was_in_range and not in_range:
            open_period = _OpenPeriod(start_timestamp=point.timestamp, exit_price=point.price)
            if not auto_rebalance:
                rebalances.append(
                    RebalanceEvent(
                        timestamp=point.timestamp,
                        price=point.price,
                        reason=RebalanceReason.PRICE_EXIT_RANGE,
                        old_range=current_range,
                        new_range=current_range,
                        fees_collected=total_fees,
                        gas_cost=0.0,
                        position_value=current_value,
                        in_range_duration_ms=point.timestamp - in_range_since,
                    )
                )
        elif not was_in_range and in_range:
            in_range_since = point.timestamp
            if open_period is not None:
                duration = point.timestamp - open_period.start_timestamp
                out_of_range_periods.append(
                    OutOfRangePeriod(
                        start_timestamp=open_period.start_timestamp,
                        end_timestamp=point.timestamp,
                        duration_ms=duration,
                        exit_price=open_period.exit_price,
                        return_price=point.price,
                        did_return=True,
                    )
                )
                open_period = None
                if not auto_rebalance:
                    # price came back on its own, no transaction and no gas
                    rebalances.append(
                        RebalanceEvent(
                            timestamp=point.timestamp,
                            price=point.price,
                            reason=RebalanceReason.RETURN_TO_RANGE,
                            old_range=current_range,
                            new_range=current_range,
                            fees_collected=total_fees,
                            gas_cost=0.0,
                            position_value=current_value,
                            out_of_range_duration_ms=duration,
                        )
                    )

        if in_range:
            time_in_range_ms += dt_ms
            fees = estimate_fees(
                current_value,
                pool_apr,
                dt_ms / HOUR_MS,
                range_bps,
                discount_factor=settings.fee_discount_factor,
                max_concentration=settings.max_concentration_multiplier,
            )
            total_fees += fees
            current_value += fees
        else:
            time_out_of_range_ms += dt_ms
        was_in_range = in_range

        # IL is always measured against the very first entry price
        il_usd = config.initial_capital * calculate_il(initial_price, point.price)

        decision = decide(
            strategy,
            point.price,
            current_range,
            point.timestamp - last_rebalance_ts,
            auto_rebalance,
        )
        if decision.should:
            total_gas += gas_per_tx
            current_value -= gas_per_tx

            old_range = current_range
            current_range = calculate_range(point.price, range_bps)

            out_of_range_duration: Optional[int] = None
            if open_period is not None:
                out_of_range_duration = point.timestamp - open_period.start_timestamp
                out_of_range_periods.append(
                    OutOfRangePeriod(
                        start_timestamp=open_period.start_timestamp,
                        end_timestamp=point.timestamp,
                        duration_ms=out_of_range_duration,
                        exit_price=open_period.exit_price,
                        return_price=None,
                        did_return=False,
                    )
                )
                open_period = None

            rebalances.append(
                RebalanceEvent(
                    timestamp=point.timestamp,
                    price=point.price,
                    reason=decision.reason,
                    old_range=old_range,
                    new_range=current_range,
                    fees_collected=total_fees,
                    gas_cost=gas_per_tx,
                    position_value=current_value - il_usd,
                    out_of_range_duration_ms=out_of_range_duration,
                )
            )
            ranges.append(
                RangeSnapshot(timestamp=point.timestamp, lower=current_range.lower, upper=current_range.upper)
            )
            last_rebalance_ts = point.timestamp
            # freshly centred around the current price
            was_in_range = True
            in_range_since = point.timestamp

        equity = current_value - il_usd
        equity_curve.append(EquityPoint(timestamp=point.timestamp, value=equity))
        if prev_equity > 0:
            returns.append((equity - prev_equity) / prev_equity)
        prev_equity = equity

        if equity > peak_value:
            peak_value = equity
        drawdown = peak_value - equity
        if drawdown > max_drawdown:
            max_drawdown = drawdown
        if peak_value > 0 and drawdown / peak_value * 100 > max_drawdown_pct:
            max_drawdown_pct = drawdown / peak_value * 100

    last = prices[-1]
    if open_period is not None:
        out_of_range_periods.append(
            OutOfRangePeriod(
                start_timestamp=open_period.start_timestamp,
                end_timestamp=last.timestamp,
                duration_ms=last.timestamp - open_period.start_timestamp,
                exit_price=open_period.exit_price,
                return_price=None,
                did_return=False,
            )
        )

    total_time_ms = time_in_range_ms + time_out_of_range_ms
    time_in_range_pct = time_in_range_ms / total_time_ms * 100 if total_time_ms > 0 else 0.0

    impermanent_loss = config.initial_capital * calculate_il(initial_price, last.price)
    final_value = current_value - impermanent_loss
    total_return = final_value - config.initial_capital
    rebalance_count = sum(
        1 for e in rebalances if e.reason in (RebalanceReason.OUT_OF_RANGE, RebalanceReason.TIMER)
    )

    warnings = build_warnings(len(prices), data_source, settings)
    warnings.extend(extra_warnings)

    return BacktestResult(
        config=config,
        data_source=data_source,
        data_quality=classify_data_quality(len(prices), data_source, settings),
        warnings=warnings,
        final_value=final_value,
        total_return=total_return,
        total_return_percent=total_return / config.initial_capital * 100,
        fees_earned=total_fees,
        impermanent_loss=impermanent_loss,
        gas_costs=total_gas,
        net_pnl=total_return,
        max_drawdown=max_drawdown,
        max_drawdown_percent=max_drawdown_pct,
        sharpe_ratio=annualized_sharpe(returns, median_step_ms(prices)),
        time_in_range=time_in_range_pct,
        rebalance_count=rebalance_count,
        avg_time_per_cycle=(last.timestamp - first.timestamp) / (rebalance_count + 1),
        rebalances=rebalances,
        out_of_range_periods=out_of_range_periods,
        equity_curve=equity_curve,
        price_data=prices,
        ranges=ranges,
    )


async def run_backtest(
    config: BacktestConfig,
    *,
    resolver: Optional[PriceFeedResolver] = None,
    settings: Optional[EngineSettings] = None,
) -> BacktestResult:
    """Resolve prices for ``config`` and simulate the strategy over them.

    Raises ``PriceDataUnavailableError`` when no source (synthetic included,
    if allowed) produced data; nothing is retried and no partial result is
    returned.
    """
    settings = settings or load_engine_settings()
    resolver = resolver or PriceFeedResolver(settings.price_sources)
    events = bind_events(
        logger,
        pool_id=config.pool_id,
        pair=f"{config.token_a}/{config.token_b}",
        strategy=config.strategy.id or config.strategy.type.value,
    )
    events.info("backtest_started", start_time=config.start_time, end_time=config.end_time)

    with timed("backtest_run"):
        feed = await resolver.resolve(
            config.token_a,
            config.token_b,
            config.start_time,
            config.end_time,
            config.allow_synthetic,
        )
        if feed.source is DataSource.NONE:
            events.warning("backtest_aborted", reason="price_data_unavailable")
            raise PriceDataUnavailableError(
                feed.error or "Failed to fetch historical price data. Cannot run backtest."
            )
        if len(feed.prices) < MIN_POINTS:
            raise InsufficientDataError(MIN_POINTS, len(feed.prices), feed.source.value)

        gas_cost = await get_estimated_gas_cost(settings)
        result = simulate(config, feed.prices, feed.source, settings=settings, gas_cost_per_tx=gas_cost)

    increment_metric("backtest_runs", labels={"source": feed.source.value})
    events.info(
        "backtest_finished",
        source=feed.source,
        points=len(feed.prices),
        total_return_percent=round(result.total_return_percent, 6),
        rebalance_count=result.rebalance_count,
    )
    return result
