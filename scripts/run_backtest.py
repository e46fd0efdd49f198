"""Run a backtest, a strategy comparison or a Monte Carlo stress test from the shell.

Usage:
    python scripts/run_backtest.py SUI USDC --preset smart-rebalance --days 7
    python scripts/run_backtest.py SUI USDC --compare --days 7
    python scripts/run_backtest.py SUI USDC --preset conservative --monte-carlo 200 --seed 7

The window ends now unless ``--end`` (epoch ms) is given. Output is a JSON
summary on stdout; logs go to the configured log file and stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict

from lp_backtester.analytics_engine.backtesting import run_backtest
from lp_backtester.analytics_engine.models import DAY_MS, BacktestConfig, BacktestResult
from lp_backtester.analytics_engine.monte_carlo import run_monte_carlo_simulation
from lp_backtester.analytics_engine.strategy_comparison import compare_strategies
from lp_backtester.analytics_engine.strategy_policy import STRATEGY_PRESETS, get_strategy_preset
from lp_backtester.core.config_loader import load_config, load_engine_settings
from lp_backtester.core.errors import BacktestError
from lp_backtester.core.logging_config import setup_logging


def summarize(result: BacktestResult) -> Dict[str, Any]:
    return {
        "strategy": result.config.strategy.id or result.config.strategy.type.value,
        "data_source": result.data_source.value,
        "data_quality": result.data_quality.value,
        "warnings": result.warnings,
        "final_value": round(result.final_value, 4),
        "total_return_percent": round(result.total_return_percent, 4),
        "fees_earned": round(result.fees_earned, 4),
        "impermanent_loss": round(result.impermanent_loss, 4),
        "gas_costs": round(result.gas_costs, 4),
        "max_drawdown_percent": round(result.max_drawdown_percent, 4),
        "sharpe_ratio": round(result.sharpe_ratio, 4),
        "time_in_range": round(result.time_in_range, 2),
        "rebalance_count": result.rebalance_count,
        "out_of_range_periods": len(result.out_of_range_periods),
    }


async def _run(args: argparse.Namespace) -> Dict[str, Any]:
    settings = load_engine_settings()
    end_ms = args.end or int(datetime.now(timezone.utc).timestamp() * 1000)
    start_ms = end_ms - int(args.days * DAY_MS)

    preset = get_strategy_preset(args.preset)
    if preset is None:
        raise BacktestError(f"Unknown preset {args.preset!r}; choose from {[p.id for p in STRATEGY_PRESETS]}")

    config = BacktestConfig(
        pool_id=args.pool_id,
        token_a=args.token_a,
        token_b=args.token_b,
        strategy=preset.strategy,
        initial_capital=args.capital,
        start_time=start_ms,
        end_time=end_ms,
        pool_apr=args.apr,
        auto_rebalance=not args.wait_for_return,
        allow_synthetic=args.allow_synthetic,
    )

    if args.compare:
        comparisons = await compare_strategies(config, settings=settings)
        return {"comparison": [{"strategy_id": c.strategy_id, **summarize(c.result)} for c in comparisons]}
    if args.monte_carlo:
        mc = await run_monte_carlo_simulation(config, args.monte_carlo, settings=settings, seed=args.seed)
        return {"monte_carlo": asdict(mc)}

    result = await run_backtest(config, settings=settings)
    return {"backtest": summarize(result)}


def main() -> None:
    parser = argparse.ArgumentParser(description="Backtest CLMM LP strategies on historical prices")
    parser.add_argument("token_a")
    parser.add_argument("token_b")
    parser.add_argument("--pool-id", default="")
    parser.add_argument("--preset", default="smart-rebalance")
    parser.add_argument("--capital", type=float, default=1000.0)
    parser.add_argument("--apr", type=float, default=None, help="Pool APR in percent")
    parser.add_argument("--days", type=float, default=7.0)
    parser.add_argument("--end", type=int, default=None, help="Window end, epoch ms")
    parser.add_argument("--wait-for-return", action="store_true", help="Disable auto-rebalancing")
    parser.add_argument("--allow-synthetic", action="store_true")
    parser.add_argument("--compare", action="store_true", help="Compare all presets")
    parser.add_argument("--monte-carlo", type=int, default=0, metavar="N", help="Run N Monte Carlo paths")
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    setup_logging(load_config())
    try:
        payload = asyncio.run(_run(args))
    except BacktestError as exc:
        print(json.dumps({"error": str(exc)}), file=sys.stderr)
        sys.exit(1)

    print(json.dumps(payload, indent=2, default=str))


if __name__ == "__main__":
    main()
