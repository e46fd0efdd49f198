import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

_BASE_DIR = Path(__file__).resolve().parents[2]

CONFIG_ENV_VAR = "LP_BACKTESTER_CONFIG"

BACKTEST_DEFAULTS: Dict[str, Any] = {
    # Fixed cost of one on-chain transaction (open or rebalance), USD
    "gas_cost_per_tx_usd": 0.02,
    # Used when the caller does not provide pool APR
    "default_pool_apr": 50.0,
    "fee_discount_factor": 0.7,
    "max_concentration_multiplier": 20.0,
    "default_range_bps": 300,
    # Data quality thresholds (number of price points)
    "limited_data_points": 24,
    "medium_data_points": 100,
    "monte_carlo_min_points": 10,
    "monte_carlo_default_simulations": 100,
}

PRICE_SOURCE_DEFAULTS: Dict[str, Any] = {
    "timeout_seconds": 10.0,
    "binance_base_url": "https://api.binance.com",
    "binance_max_candles": 1000,
    "defillama_base_url": "https://coins.llama.fi",
    "defillama_max_points": 100,
    "defillama_batch_size": 5,
    "coingecko_base_url": "https://api.coingecko.com/api/v3",
    "coingecko_max_days": 90,
    "coingecko_proxies": [
        "",
        "https://corsproxy.io/?",
        "https://api.codetabs.com/v1/proxy?quest=",
    ],
}

API_DEFAULTS: Dict[str, Any] = {
    # Browser front-ends allowed to call the API
    "cors_origins": [],
}

LOGGING_DEFAULTS: Dict[str, Any] = {
    "level": "INFO",
    "file": "logs/lp_backtester.log",
    "max_bytes": 10 * 1024 * 1024,
    "backup_count": 5,
    "console": True,
    "levels": {"httpx": "WARNING", "httpcore": "WARNING"},
}


def get_base_dir() -> Path:
    return _BASE_DIR


def _safe_load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return data if isinstance(data, dict) else {}


def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(base)
    for key, value in override.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = _merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def _apply_defaults(data: Dict[str, Any], block: str, defaults: Dict[str, Any]) -> None:
    section = data.get(block)
    if not isinstance(section, dict):
        section = {}
        data[block] = section
    # Only fill in what is missing, explicit values win
    for k, v in defaults.items():
        section.setdefault(k, v)


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load the YAML config and fill in defaults for the backtest, price source,
    logging and api blocks. ``config.local.yaml`` next to the base file is merged
    on top of it. A missing base file is fine: the defaults are enough to run.
    """

    if path is None:
        env_path = os.getenv(CONFIG_ENV_VAR)
        path = Path(env_path) if env_path else _BASE_DIR / "config" / "config.yaml"
    path = Path(path)
    local_path = path.with_name("config.local.yaml")

    data = _merge_dicts(_safe_load_yaml(path), _safe_load_yaml(local_path))

    _apply_defaults(data, "backtest", BACKTEST_DEFAULTS)
    _apply_defaults(data, "price_sources", PRICE_SOURCE_DEFAULTS)
    _apply_defaults(data, "logging", LOGGING_DEFAULTS)
    _apply_defaults(data, "api", API_DEFAULTS)

    return data


@dataclass
class PriceSourceSettings:
    timeout_seconds: float = 10.0
    binance_base_url: str = "https://api.binance.com"
    binance_max_candles: int = 1000
    defillama_base_url: str = "https://coins.llama.fi"
    defillama_max_points: int = 100
    defillama_batch_size: int = 5
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    coingecko_max_days: int = 90
    coingecko_proxies: List[str] = field(
        default_factory=lambda: list(PRICE_SOURCE_DEFAULTS["coingecko_proxies"])
    )


@dataclass
class EngineSettings:
    gas_cost_per_tx_usd: float = 0.02
    default_pool_apr: float = 50.0
    fee_discount_factor: float = 0.7
    max_concentration_multiplier: float = 20.0
    default_range_bps: int = 300
    limited_data_points: int = 24
    medium_data_points: int = 100
    monte_carlo_min_points: int = 10
    monte_carlo_default_simulations: int = 100
    price_sources: PriceSourceSettings = field(default_factory=PriceSourceSettings)


def load_engine_settings(config: Optional[Dict[str, Any]] = None) -> EngineSettings:
    """Build typed engine settings from the merged config dict."""
    cfg = config if config is not None else load_config()
    b = cfg.get("backtest", {}) or {}
    p = cfg.get("price_sources", {}) or {}

    return EngineSettings(
        gas_cost_per_tx_usd=float(b.get("gas_cost_per_tx_usd", 0.02)),
        default_pool_apr=float(b.get("default_pool_apr", 50.0)),
        fee_discount_factor=float(b.get("fee_discount_factor", 0.7)),
        max_concentration_multiplier=float(b.get("max_concentration_multiplier", 20.0)),
        default_range_bps=int(b.get("default_range_bps", 300)),
        limited_data_points=int(b.get("limited_data_points", 24)),
        medium_data_points=int(b.get("medium_data_points", 100)),
        monte_carlo_min_points=int(b.get("monte_carlo_min_points", 10)),
        monte_carlo_default_simulations=int(b.get("monte_carlo_default_simulations", 100)),
        price_sources=PriceSourceSettings(
            timeout_seconds=float(p.get("timeout_seconds", 10.0)),
            binance_base_url=str(p.get("binance_base_url", PRICE_SOURCE_DEFAULTS["binance_base_url"])),
            binance_max_candles=int(p.get("binance_max_candles", 1000)),
            defillama_base_url=str(p.get("defillama_base_url", PRICE_SOURCE_DEFAULTS["defillama_base_url"])),
            defillama_max_points=int(p.get("defillama_max_points", 100)),
            defillama_batch_size=int(p.get("defillama_batch_size", 5)),
            coingecko_base_url=str(p.get("coingecko_base_url", PRICE_SOURCE_DEFAULTS["coingecko_base_url"])),
            coingecko_max_days=int(p.get("coingecko_max_days", 90)),
            coingecko_proxies=[str(x) for x in p.get("coingecko_proxies", [])],
        ),
    )
