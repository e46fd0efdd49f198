import pytest

pytest.importorskip("yaml")

from lp_backtester.core.config_loader import (
    CONFIG_ENV_VAR,
    EngineSettings,
    get_base_dir,
    load_config,
    load_engine_settings,
)


def test_load_config_adds_backtest_defaults(tmp_path):
    config = load_config(tmp_path / "missing.yaml")
    backtest = config.get("backtest")

    assert backtest is not None
    assert backtest["gas_cost_per_tx_usd"] == 0.02
    assert backtest["default_pool_apr"] == 50.0
    assert backtest["fee_discount_factor"] == 0.7
    assert backtest["max_concentration_multiplier"] == 20.0
    assert backtest["monte_carlo_min_points"] == 10
    assert config["price_sources"]["binance_max_candles"] == 1000
    assert config["logging"]["level"] == "INFO"


def test_local_override_is_merged(tmp_path):
    (tmp_path / "config.yaml").write_text(
        "backtest:\n  gas_cost_per_tx_usd: 0.05\nprice_sources:\n  timeout_seconds: 3\n",
        encoding="utf-8",
    )
    (tmp_path / "config.local.yaml").write_text(
        "backtest:\n  default_pool_apr: 12.5\n",
        encoding="utf-8",
    )
    config = load_config(tmp_path / "config.yaml")

    assert config["backtest"]["gas_cost_per_tx_usd"] == 0.05
    assert config["backtest"]["default_pool_apr"] == 12.5
    # untouched keys still get their defaults
    assert config["backtest"]["default_range_bps"] == 300
    assert config["price_sources"]["timeout_seconds"] == 3


def test_env_var_selects_config_file(tmp_path, monkeypatch):
    path = tmp_path / "alt.yaml"
    path.write_text("backtest:\n  medium_data_points: 50\n", encoding="utf-8")
    monkeypatch.setenv(CONFIG_ENV_VAR, str(path))

    assert load_config()["backtest"]["medium_data_points"] == 50


def test_engine_settings_from_config(tmp_path):
    (tmp_path / "config.yaml").write_text(
        "backtest:\n  gas_cost_per_tx_usd: 0.01\n  limited_data_points: 12\n"
        "price_sources:\n  coingecko_proxies: ['']\n",
        encoding="utf-8",
    )
    settings = load_engine_settings(load_config(tmp_path / "config.yaml"))

    assert isinstance(settings, EngineSettings)
    assert settings.gas_cost_per_tx_usd == 0.01
    assert settings.limited_data_points == 12
    assert settings.default_pool_apr == 50.0
    assert settings.price_sources.coingecko_proxies == [""]
    assert settings.price_sources.binance_base_url == "https://api.binance.com"


def test_shipped_config_matches_defaults():
    settings = load_engine_settings(load_config(get_base_dir() / "config" / "config.yaml"))
    assert settings == EngineSettings()


def test_get_base_dir_points_to_project_root():
    base_dir = get_base_dir()
    assert (base_dir / "lp_backtester").is_dir()
