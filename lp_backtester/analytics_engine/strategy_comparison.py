"""Run every candidate strategy on the same pair and window and rank the results."""
from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional, Sequence

from lp_backtester.analytics_engine.backtesting import run_backtest
from lp_backtester.analytics_engine.models import BacktestConfig, StrategyComparison, StrategyPreset
from lp_backtester.analytics_engine.strategy_policy import select_presets
from lp_backtester.core.config_loader import EngineSettings, load_engine_settings
from lp_backtester.core.metrics import increment_metric
from lp_backtester.core.structured_logging import log_error, log_info
from lp_backtester.data_collector.price_feed import PriceFeedResolver

logger = logging.getLogger(__name__)


async def compare_strategies(
    base_config: BacktestConfig,
    strategy_ids: Optional[Sequence[str]] = None,
    *,
    presets: Optional[Sequence[StrategyPreset]] = None,
    resolver: Optional[PriceFeedResolver] = None,
    settings: Optional[EngineSettings] = None,
) -> List[StrategyComparison]:
    """
    Backtest each preset (all of them by default) with ``base_config``'s
    pair, window and capital. Runs are sequential and each one resolves its
    own prices. A strategy whose run fails is logged and left out; it does
    not abort the others. Results are sorted by total return, best first,
    with ties kept in catalogue order. An id that is not in the catalogue
    raises ``InvalidConfigError`` before any run starts.
    """
    candidates = list(presets) if presets is not None else select_presets(strategy_ids)
    if presets is not None and strategy_ids is not None:
        wanted = set(strategy_ids)
        candidates = [p for p in candidates if p.id in wanted]

    settings = settings or load_engine_settings()
    resolver = resolver or PriceFeedResolver(settings.price_sources)

    results: List[StrategyComparison] = []
    for preset in candidates:
        config = dataclasses.replace(base_config, strategy=preset.strategy)
        try:
            result = await run_backtest(config, resolver=resolver, settings=settings)
        except Exception as exc:  # noqa: BLE001
            increment_metric("comparison_strategy_failures", labels={"strategy": preset.id})
            log_error(logger, "comparison_strategy_failed", strategy=preset.id, error=str(exc))
            continue
        results.append(StrategyComparison(strategy_id=preset.id, strategy_name=preset.name, result=result))

    results.sort(key=lambda c: c.result.total_return_percent, reverse=True)
    log_info(
        logger,
        "comparison_finished",
        requested=len(candidates),
        completed=len(results),
        ranking=[c.strategy_id for c in results],
    )
    return results
