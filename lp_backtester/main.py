from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lp_backtester.analytics_engine.models import TIME_PRESETS
from lp_backtester.api.backtest_api import router as backtest_router
from lp_backtester.core.config_loader import load_config
from lp_backtester.core.logging_config import setup_logging
from lp_backtester.core.metrics import get_metrics_snapshot


config = load_config()
logger = setup_logging(config)

app = FastAPI(
    title="CLMM LP Backtester",
    version="0.1.0",
    description="Historical backtests and Monte Carlo stress tests for concentrated-liquidity strategies",
)

origins = list(config.get("api", {}).get("cors_origins") or [])

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(backtest_router)


@app.on_event("startup")
async def on_startup():
    logger.info("LP backtester starting up")
    logger.info(f"Gas cost per tx: {config.get('backtest', {}).get('gas_cost_per_tx_usd')}")
    logger.info(f"Allowed origins: {origins}")


@app.on_event("shutdown")
async def on_shutdown():
    logger.info("LP backtester shutting down")


@app.get("/")
def root():
    return {
        "status": "ok",
        "service": "lp-backtester",
        "time": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/time-presets")
def time_presets():
    return [{"id": p.id, "label": p.label, "ms": p.ms} for p in TIME_PRESETS]


@app.get("/metrics")
def metrics():
    return get_metrics_snapshot()
