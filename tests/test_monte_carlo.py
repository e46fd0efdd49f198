import asyncio

import pytest

from lp_backtester.analytics_engine.models import DataSource
from lp_backtester.analytics_engine.monte_carlo import (
    run_monte_carlo_simulation,
    seeded_normals_factory,
    summarize_outcomes,
)
from lp_backtester.analytics_engine.price_paths import (
    FixedNormals,
    calibrate,
    generate_gbm_path,
)
from lp_backtester.core.config_loader import EngineSettings
from lp_backtester.core.errors import InsufficientDataError, InvalidConfigError, PriceDataUnavailableError

SETTINGS = EngineSettings()

WIGGLY = [100, 102, 99, 101, 104, 103, 98, 97, 100, 102, 105, 103, 101, 99, 100, 102, 104, 106, 103, 101]


def _mc(config, resolver, simulations=None, **kwargs):
    return asyncio.run(
        run_monte_carlo_simulation(config, simulations, resolver=resolver, settings=SETTINGS, **kwargs)
    )


def test_fixed_normals_give_identical_outcomes(make_config, make_series, make_resolver):
    resolver = make_resolver(make_series(WIGGLY))
    result = _mc(make_config(), resolver, 5, normals_factory=lambda i: FixedNormals([0.0]))

    assert result.simulations == 5
    p = result.percentiles
    assert p.p5 == p.p25 == p.p50 == p.p75 == p.p95
    assert result.std_dev == pytest.approx(0.0)
    assert result.best_case == result.worst_case
    assert result.probability_of_profit in (0.0, 100.0)


def test_seeded_runs_are_reproducible_and_ordered(make_config, make_series, make_resolver):
    prices = make_series(WIGGLY)
    first = _mc(make_config(), make_resolver(prices), 100, seed=42)
    second = _mc(make_config(), make_resolver(prices), 100, seed=42)

    assert first == second
    p = first.percentiles
    assert first.worst_case <= p.p5 <= p.p25 <= p.p50 <= p.p75 <= p.p95 <= first.best_case
    assert 0.0 <= first.probability_of_profit <= 100.0
    assert first.std_dev > 0


def test_default_simulation_count_comes_from_settings(make_config, make_series, make_resolver):
    result = _mc(make_config(), make_resolver(make_series(WIGGLY)), seed=1)
    assert result.simulations == SETTINGS.monte_carlo_default_simulations


def test_calibration_never_uses_synthetic_data(make_config, make_series, make_resolver):
    resolver = make_resolver(make_series(WIGGLY))
    _mc(make_config(allow_synthetic=True), resolver, 3, seed=3)
    assert resolver.calls[0]["allow_synthetic"] is False


def test_too_few_points_is_rejected(make_config, make_series, make_resolver):
    with pytest.raises(InsufficientDataError) as excinfo:
        _mc(make_config(), make_resolver(make_series(WIGGLY[:9])), 10)
    assert excinfo.value.required == 10
    assert excinfo.value.available == 9


def test_unavailable_history_is_fatal(make_config, make_resolver):
    resolver = make_resolver([], source=DataSource.NONE, error="no data for SUI/USDC")
    with pytest.raises(PriceDataUnavailableError):
        _mc(make_config(), resolver, 10)


def test_zero_simulations_rejected(make_config, make_series, make_resolver):
    resolver = make_resolver(make_series(WIGGLY))
    with pytest.raises(InvalidConfigError):
        _mc(make_config(), resolver, 0)
    assert resolver.calls == []


def test_summarize_outcomes_percentiles():
    summary = summarize_outcomes([float(v) for v in range(20, 0, -1)])
    assert summary.percentiles.p5 == 2
    assert summary.percentiles.p50 == 11
    assert summary.percentiles.p95 == 20
    assert summary.mean == pytest.approx(10.5)
    assert summary.best_case == 20
    assert summary.worst_case == 1
    assert summary.probability_of_profit == pytest.approx(100.0)


def test_summarize_outcomes_probability_of_profit():
    # zero is not a profit
    assert summarize_outcomes([-1.0, 0.0, 1.0, 2.0]).probability_of_profit == pytest.approx(50.0)
    with pytest.raises(ValueError):
        summarize_outcomes([])


def test_gbm_path_matches_calibration(make_series):
    prices = make_series(WIGGLY)
    calibration = calibrate(prices)
    path = generate_gbm_path(calibration, prices[0].timestamp, FixedNormals([0.0]))

    assert len(path) == len(prices)
    assert path[0].price == prices[0].price
    assert [p.timestamp for p in path] == [p.timestamp for p in prices]
    # with zero shocks the path follows the mean log return exactly
    assert path[-1].price == pytest.approx(prices[-1].price)


def test_seeded_factory_streams_are_independent():
    factory = seeded_normals_factory(7, 2)
    a = [factory(0).next() for _ in range(1)]
    b = [factory(1).next() for _ in range(1)]
    assert a != b
    assert seeded_normals_factory(7, 2)(0).next() == factory(0).next()
