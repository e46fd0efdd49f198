import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from lp_backtester.analytics_engine.backtesting import run_backtest
from lp_backtester.analytics_engine.models import BacktestConfig, StrategyDescriptor
from lp_backtester.analytics_engine.monte_carlo import run_monte_carlo_simulation
from lp_backtester.analytics_engine.strategy_comparison import compare_strategies
from lp_backtester.analytics_engine.strategy_policy import (
    STRATEGY_PRESETS,
    calculate_expected_apy,
    get_strategy_preset,
)
from lp_backtester.core.config_loader import EngineSettings, load_engine_settings
from lp_backtester.core.errors import (
    InsufficientDataError,
    InvalidConfigError,
    PriceDataUnavailableError,
)
from lp_backtester.data_collector.price_feed import PriceFeedResolver

logger = logging.getLogger(__name__)

router = APIRouter()


class BacktestRequest(BaseModel):
    pool_id: str = ""
    token_a: str
    token_b: str
    strategy_id: Optional[str] = None
    strategy: Optional[Dict[str, Any]] = None
    initial_capital: float
    start_time: int
    end_time: int
    pool_apr: Optional[float] = None
    auto_rebalance: bool = True
    allow_synthetic: bool = True


class CompareRequest(BacktestRequest):
    strategy_ids: Optional[List[str]] = None


class MonteCarloRequest(BacktestRequest):
    simulations: Optional[int] = Field(default=None, ge=1, le=10000)
    seed: Optional[int] = None


def get_settings() -> EngineSettings:
    return load_engine_settings()


def get_resolver(settings: EngineSettings = Depends(get_settings)) -> PriceFeedResolver:
    return PriceFeedResolver(settings.price_sources)


def _build_config(req: BacktestRequest, *, require_strategy: bool = True) -> BacktestConfig:
    if req.strategy is not None:
        strategy = StrategyDescriptor.from_dict(req.strategy)
    elif req.strategy_id is not None:
        preset = get_strategy_preset(req.strategy_id)
        if preset is None:
            raise InvalidConfigError(f"Unknown strategy preset: {req.strategy_id}")
        strategy = preset.strategy
    elif require_strategy:
        raise InvalidConfigError("Either 'strategy' or 'strategy_id' is required")
    else:
        # comparison replaces the strategy per preset anyway
        strategy = STRATEGY_PRESETS[0].strategy

    return BacktestConfig(
        pool_id=req.pool_id,
        token_a=req.token_a,
        token_b=req.token_b,
        strategy=strategy,
        initial_capital=req.initial_capital,
        start_time=req.start_time,
        end_time=req.end_time,
        pool_apr=req.pool_apr,
        auto_rebalance=req.auto_rebalance,
        allow_synthetic=req.allow_synthetic,
    )


def _to_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, PriceDataUnavailableError):
        return HTTPException(status_code=503, detail={"source": exc.source, "error": exc.error})
    if isinstance(exc, InsufficientDataError):
        return HTTPException(
            status_code=422,
            detail={"error": str(exc), "required": exc.required, "available": exc.available},
        )
    return HTTPException(status_code=422, detail={"error": str(exc)})


@router.get("/strategies")
def list_strategies(base_apy: Optional[float] = None):
    """Preset catalogue, with an expected APY band when ``base_apy`` is given."""
    payload = []
    for preset in STRATEGY_PRESETS:
        item = {
            "id": preset.id,
            "name": preset.name,
            "description": preset.description,
            "risk_level": preset.risk_level,
            "expected_apr_multiplier": preset.expected_apr_multiplier,
            "gas_cost_level": preset.gas_cost_level,
            "best_for": list(preset.best_for),
            "strategy": preset.strategy,
        }
        if base_apy is not None:
            item["expected_apy"] = calculate_expected_apy(base_apy, preset.strategy)
        payload.append(item)
    return payload


@router.post("/backtest")
async def backtest(
    req: BacktestRequest,
    settings: EngineSettings = Depends(get_settings),
    resolver: PriceFeedResolver = Depends(get_resolver),
):
    try:
        config = _build_config(req)
        return await run_backtest(config, resolver=resolver, settings=settings)
    except (InvalidConfigError, PriceDataUnavailableError, InsufficientDataError) as exc:
        logger.warning("backtest request rejected: %s", exc)
        raise _to_http_error(exc) from exc


@router.post("/backtest/compare")
async def backtest_compare(
    req: CompareRequest,
    settings: EngineSettings = Depends(get_settings),
    resolver: PriceFeedResolver = Depends(get_resolver),
):
    try:
        config = _build_config(req, require_strategy=False)
        return await compare_strategies(config, req.strategy_ids, resolver=resolver, settings=settings)
    except InvalidConfigError as exc:
        logger.warning("compare request rejected: %s", exc)
        raise _to_http_error(exc) from exc


@router.post("/backtest/monte-carlo")
async def backtest_monte_carlo(
    req: MonteCarloRequest,
    settings: EngineSettings = Depends(get_settings),
    resolver: PriceFeedResolver = Depends(get_resolver),
):
    try:
        config = _build_config(req)
        return await run_monte_carlo_simulation(
            config,
            req.simulations,
            resolver=resolver,
            settings=settings,
            seed=req.seed,
        )
    except (InvalidConfigError, PriceDataUnavailableError, InsufficientDataError) as exc:
        logger.warning("monte carlo request rejected: %s", exc)
        raise _to_http_error(exc) from exc
