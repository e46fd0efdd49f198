"""Monte Carlo stress test of a strategy against GBM paths calibrated on real history."""
from __future__ import annotations

import logging
import math
from typing import Callable, List, Optional, Sequence

import numpy as np

from lp_backtester.analytics_engine.backtesting import simulate
from lp_backtester.analytics_engine.models import (
    BacktestConfig,
    DataSource,
    MonteCarloResult,
    Percentiles,
)
from lp_backtester.analytics_engine.position_economics import get_estimated_gas_cost
from lp_backtester.analytics_engine.price_paths import (
    BoxMullerNormals,
    NormalSource,
    calibrate,
    generate_gbm_path,
)
from lp_backtester.core.config_loader import EngineSettings, load_engine_settings
from lp_backtester.core.errors import InsufficientDataError, InvalidConfigError, PriceDataUnavailableError
from lp_backtester.core.structured_logging import bind_events
from lp_backtester.data_collector.price_feed import PriceFeedResolver

logger = logging.getLogger(__name__)

MONTE_CARLO_PATH_WARNING = "Monte Carlo simulation using synthetic price path"

NormalsFactory = Callable[[int], NormalSource]


def seeded_normals_factory(seed: Optional[int] = None, simulations: int = 1) -> NormalsFactory:
    """One independent Box-Muller stream per simulation, derived from ``seed``."""
    children = np.random.SeedSequence(seed).spawn(max(1, simulations))

    def factory(index: int) -> NormalSource:
        return BoxMullerNormals(rng=np.random.default_rng(children[index]))

    return factory


def _percentile(sorted_values: Sequence[float], p: float) -> float:
    idx = math.floor(len(sorted_values) * p / 100)
    return sorted_values[min(idx, len(sorted_values) - 1)]


def summarize_outcomes(returns_pct: Sequence[float]) -> MonteCarloResult:
    """Distribution summary of per-run total return percentages."""
    if not returns_pct:
        raise ValueError("summarize_outcomes needs at least one outcome")
    ordered = sorted(returns_pct)
    arr = np.asarray(ordered, dtype=float)
    profitable = sum(1 for r in ordered if r > 0)
    return MonteCarloResult(
        simulations=len(ordered),
        percentiles=Percentiles(
            p5=_percentile(ordered, 5),
            p25=_percentile(ordered, 25),
            p50=_percentile(ordered, 50),
            p75=_percentile(ordered, 75),
            p95=_percentile(ordered, 95),
        ),
        mean=float(arr.mean()),
        std_dev=float(arr.std()),
        best_case=ordered[-1],
        worst_case=ordered[0],
        probability_of_profit=profitable / len(ordered) * 100,
    )


async def run_monte_carlo_simulation(
    config: BacktestConfig,
    simulations: Optional[int] = None,
    *,
    resolver: Optional[PriceFeedResolver] = None,
    settings: Optional[EngineSettings] = None,
    normals_factory: Optional[NormalsFactory] = None,
    seed: Optional[int] = None,
) -> MonteCarloResult:
    """
    Fetch one real series, calibrate GBM on its log returns and re-run the
    strategy on ``simulations`` synthetic paths of the same length and step.

    Only real data is used for calibration: synthetic fallback is disabled
    for the fetch.
    """
    settings = settings or load_engine_settings()
    if simulations is None:
        simulations = settings.monte_carlo_default_simulations
    if simulations < 1:
        raise InvalidConfigError(f"simulations must be at least 1, got {simulations}")

    resolver = resolver or PriceFeedResolver(settings.price_sources)
    feed = await resolver.resolve(
        config.token_a,
        config.token_b,
        config.start_time,
        config.end_time,
        allow_synthetic=False,
    )
    if feed.source is DataSource.NONE:
        raise PriceDataUnavailableError(
            feed.error or "Insufficient historical data for Monte Carlo simulation"
        )
    min_points = settings.monte_carlo_min_points
    if len(feed.prices) < min_points:
        raise InsufficientDataError(min_points, len(feed.prices), feed.source.value, purpose="Monte Carlo simulation")

    calibration = calibrate(feed.prices)
    events = bind_events(
        logger,
        pair=f"{config.token_a}/{config.token_b}",
        strategy=config.strategy.id or config.strategy.type.value,
    )
    events.info(
        "monte_carlo_calibrated",
        source=feed.source,
        points=calibration.length,
        mean_log_return=calibration.mean_log_return,
        volatility=calibration.volatility,
        step_ms=calibration.step_ms,
        simulations=simulations,
    )

    factory = normals_factory or seeded_normals_factory(seed, simulations)
    gas_cost = await get_estimated_gas_cost(settings)
    start_ts = feed.prices[0].timestamp

    outcomes: List[float] = []
    for i in range(simulations):
        path = generate_gbm_path(calibration, start_ts, factory(i))
        result = simulate(
            config,
            path,
            DataSource.SYNTHETIC,
            settings=settings,
            gas_cost_per_tx=gas_cost,
            extra_warnings=(MONTE_CARLO_PATH_WARNING,),
        )
        outcomes.append(result.total_return_percent)

    summary = summarize_outcomes(outcomes)
    events.info(
        "monte_carlo_finished",
        simulations=simulations,
        p50=summary.percentiles.p50,
        probability_of_profit=summary.probability_of_profit,
    )
    return summary
