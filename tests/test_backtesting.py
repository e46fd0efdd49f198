import asyncio

import pytest

from lp_backtester.analytics_engine.backtesting import (
    ESTIMATED_FEES_WARNING,
    LIMITED_DATA_WARNING,
    SYNTHETIC_DATA_WARNING,
    annualized_sharpe,
    run_backtest,
    simulate,
)
from lp_backtester.analytics_engine.models import (
    HOUR_MS,
    BacktestResult,
    DataQuality,
    DataSource,
    RebalanceReason,
    StrategyDescriptor,
    StrategyType,
)
from lp_backtester.analytics_engine.position_economics import estimate_fees
from lp_backtester.core.config_loader import EngineSettings
from lp_backtester.core.errors import InsufficientDataError, InvalidConfigError, PriceDataUnavailableError


SETTINGS = EngineSettings()


def _run(config, resolver):
    return asyncio.run(run_backtest(config, resolver=resolver, settings=SETTINGS))


def test_flat_series_never_rebalances(make_config, make_series, make_resolver):
    prices = make_series([100.0] * 25)
    result = _run(make_config(), make_resolver(prices))

    assert isinstance(result, BacktestResult)
    assert result.rebalance_count == 0
    assert [e.reason for e in result.rebalances] == [RebalanceReason.POSITION_OPENED]
    assert result.time_in_range == pytest.approx(100.0)
    assert result.impermanent_loss == pytest.approx(0.0)
    assert result.out_of_range_periods == []
    assert result.fees_earned > 0
    # only the opening transaction pays gas
    assert result.gas_costs == pytest.approx(SETTINGS.gas_cost_per_tx_usd)
    assert result.total_return == pytest.approx(result.fees_earned - result.gas_costs)
    assert result.max_drawdown == pytest.approx(0.0)


def test_timer_strategy_rebalances_every_six_hours(make_config, make_series, make_resolver):
    prices = make_series([100 + 30 * i / 24 for i in range(25)])
    strategy = StrategyDescriptor(type=StrategyType.TIME_BASED, timer_duration_ms=6 * HOUR_MS, range_bps=500)
    result = _run(make_config(strategy=strategy), make_resolver(prices))

    start = prices[0].timestamp
    reasons = [e.reason for e in result.rebalances]
    assert reasons == [RebalanceReason.POSITION_OPENED] + [RebalanceReason.TIMER] * 4
    assert [e.timestamp for e in result.rebalances[1:]] == [start + h * HOUR_MS for h in (6, 12, 18, 24)]
    assert result.rebalance_count == 4
    assert result.gas_costs == pytest.approx(5 * SETTINGS.gas_cost_per_tx_usd)
    assert len(result.ranges) == 5


def test_wait_for_return_records_open_period_at_series_end(make_config, make_series, make_resolver):
    prices = make_series([100, 100, 100, 120, 120, 120, 120, 120])
    result = _run(make_config(auto_rebalance=False), make_resolver(prices))

    assert len(result.out_of_range_periods) == 1
    period = result.out_of_range_periods[0]
    assert period.did_return is False
    assert period.return_price is None
    assert period.start_timestamp == prices[3].timestamp
    assert period.end_timestamp == prices[-1].timestamp
    assert period.duration_ms == 4 * HOUR_MS
    assert period.exit_price == 120

    exit_events = [e for e in result.rebalances if e.reason is RebalanceReason.PRICE_EXIT_RANGE]
    assert len(exit_events) == 1
    assert exit_events[0].in_range_duration_ms == 3 * HOUR_MS
    assert exit_events[0].gas_cost == 0
    assert result.rebalance_count == 0


def test_wait_for_return_closes_period_when_price_comes_back(make_config, make_series, make_resolver):
    prices = make_series([100, 100, 110, 110, 100, 100])
    result = _run(make_config(auto_rebalance=False), make_resolver(prices))

    reasons = [e.reason for e in result.rebalances]
    assert reasons == [
        RebalanceReason.POSITION_OPENED,
        RebalanceReason.PRICE_EXIT_RANGE,
        RebalanceReason.RETURN_TO_RANGE,
    ]
    back = result.rebalances[-1]
    assert back.gas_cost == 0
    assert back.old_range == back.new_range
    assert back.out_of_range_duration_ms == 2 * HOUR_MS

    assert len(result.out_of_range_periods) == 1
    period = result.out_of_range_periods[0]
    assert period.did_return is True
    assert period.return_price == 100
    assert result.time_in_range == pytest.approx(60.0)


def test_out_of_range_steps_earn_no_fees(make_config, make_series, make_resolver):
    prices = make_series([100, 100, 120, 120, 100])
    result = _run(make_config(auto_rebalance=False), make_resolver(prices))

    # only the first and last hourly steps end in range, fees compound on position value
    value = 1000.0 - SETTINGS.gas_cost_per_tx_usd
    expected = 0.0
    for _ in range(2):
        fee = estimate_fees(
            value,
            50.0,
            1.0,
            300,
            discount_factor=SETTINGS.fee_discount_factor,
            max_concentration=SETTINGS.max_concentration_multiplier,
        )
        expected += fee
        value += fee

    assert result.fees_earned == pytest.approx(expected)
    assert result.time_in_range == pytest.approx(50.0)
    # the two steps at 120 add nothing to the equity curve
    assert result.equity_curve[2].value == pytest.approx(result.equity_curve[3].value)


def test_auto_rebalance_recenters_range_and_closes_period(make_config, make_series, make_resolver):
    prices = make_series([100, 100, 110, 110, 110])
    result = _run(make_config(), make_resolver(prices))

    assert [e.reason for e in result.rebalances] == [
        RebalanceReason.POSITION_OPENED,
        RebalanceReason.OUT_OF_RANGE,
    ]
    event = result.rebalances[1]
    assert event.new_range.lower == pytest.approx(110 * 0.97)
    assert event.new_range.upper == pytest.approx(110 * 1.03)
    assert event.old_range.upper == pytest.approx(103.0)
    assert event.out_of_range_duration_ms == 0

    assert len(result.out_of_range_periods) == 1
    assert result.out_of_range_periods[0].did_return is False
    # exit events are only logged in wait-for-return mode
    assert RebalanceReason.PRICE_EXIT_RANGE not in [e.reason for e in result.rebalances]
    # IL is measured from the very first entry price, not the last rebalance
    assert result.impermanent_loss > 0


def test_rerun_is_deterministic(make_config, make_series, make_resolver):
    prices = make_series([100, 101, 104, 99, 97, 103, 106, 102, 100, 98])
    config = make_config()
    first = _run(config, make_resolver(prices))
    second = _run(config, make_resolver(prices))

    assert first.rebalances == second.rebalances
    assert first.equity_curve == second.equity_curve
    assert first.sharpe_ratio == second.sharpe_ratio
    assert first.max_drawdown_percent == second.max_drawdown_percent
    assert first.total_return_percent == second.total_return_percent


def test_range_invariant_and_series_order(make_config, make_series, make_resolver):
    prices = make_series([100, 95, 90, 96, 104, 110, 99, 92, 101, 108, 115, 107])
    result = _run(make_config(), make_resolver(prices))

    assert len(result.price_data) >= 2
    stamps = [p.timestamp for p in result.price_data]
    assert stamps == sorted(stamps)
    for event in result.rebalances:
        assert event.new_range.lower < event.new_range.upper
    assert result.max_drawdown_percent >= 0


def test_data_quality_and_warnings(make_config, make_series, make_resolver):
    short = _run(make_config(), make_resolver(make_series([100] * 10)))
    assert short.data_quality is DataQuality.LOW
    assert LIMITED_DATA_WARNING in short.warnings
    assert ESTIMATED_FEES_WARNING in short.warnings

    medium = _run(make_config(), make_resolver(make_series([100] * 30)))
    assert medium.data_quality is DataQuality.MEDIUM
    assert LIMITED_DATA_WARNING not in medium.warnings

    synthetic = _run(
        make_config(allow_synthetic=True),
        make_resolver(make_series([100] * 10), source=DataSource.SYNTHETIC),
    )
    assert synthetic.data_quality is DataQuality.SIMULATED
    assert synthetic.data_source is DataSource.SYNTHETIC
    assert SYNTHETIC_DATA_WARNING in synthetic.warnings
    assert LIMITED_DATA_WARNING not in synthetic.warnings


def test_unavailable_prices_are_fatal(make_config, make_resolver):
    resolver = make_resolver([], source=DataSource.NONE, error="Could not fetch historical price data for SUI/USDC.")
    with pytest.raises(PriceDataUnavailableError) as excinfo:
        _run(make_config(), resolver)
    assert excinfo.value.source == "none"
    assert excinfo.value.error


def test_single_point_is_insufficient(make_config, make_series, make_resolver):
    with pytest.raises(InsufficientDataError) as excinfo:
        _run(make_config(), make_resolver(make_series([100])))
    assert excinfo.value.required == 2
    assert excinfo.value.available == 1


def test_invalid_config_rejected_before_fetch(make_config):
    with pytest.raises(InvalidConfigError):
        make_config(start_time=10, end_time=10)
    with pytest.raises(InvalidConfigError):
        make_config(initial_capital=0)


def test_simulate_uses_default_apr_when_missing(make_config, make_series):
    prices = make_series([100] * 5)
    with_default = simulate(make_config(pool_apr=None), prices, DataSource.BINANCE, settings=SETTINGS)
    explicit = simulate(make_config(pool_apr=SETTINGS.default_pool_apr), prices, DataSource.BINANCE, settings=SETTINGS)
    assert with_default.fees_earned == pytest.approx(explicit.fees_earned)


def test_sharpe_annualization_follows_step_size():
    returns = [0.01, 0.02, 0.015, 0.005]
    hourly = annualized_sharpe(returns, HOUR_MS)
    four_hourly = annualized_sharpe(returns, 4 * HOUR_MS)
    assert hourly == pytest.approx(2 * four_hourly)
    assert annualized_sharpe([0.01, 0.01, 0.01], HOUR_MS) == 0.0
    assert annualized_sharpe([0.01], HOUR_MS) == 0.0
