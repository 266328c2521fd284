from __future__ import annotations

import math
from datetime import datetime, timedelta

import numpy as np
import pytest

from portfoliolab.black_litterman import implied_equilibrium_returns
from portfoliolab.config import Settings
from portfoliolab.estimation import (
    CovarianceEstimate,
    InputEstimationEngine,
    ShrinkageCovariance,
    estimation_preset,
    insufficient_symbols,
)
from portfoliolab.exceptions import ComputationLimitError, UnknownMethodError
from portfoliolab.market_data import OHLCVBar


def _bars(closes: list[float]) -> list[OHLCVBar]:
    start = datetime(2024, 1, 1)
    return [
        OHLCVBar(
            timestamp=start + timedelta(days=i),
            open=close,
            high=close,
            low=close,
            close=close,
            volume=None,
            source="test",
        )
        for i, close in enumerate(closes)
    ]


def _random_walk(seed: int, n: int = 260, vol: float = 0.01) -> list[float]:
    rng = np.random.default_rng(seed)
    log_rets = rng.normal(0.0004, vol, size=n - 1)
    return (100.0 * np.exp(np.concatenate([[0.0], np.cumsum(log_rets)]))).tolist()


def _engine(seed: int = 1, **overrides: object) -> InputEstimationEngine:
    return InputEstimationEngine(
        settings=Settings(**overrides),  # type: ignore[arg-type]
        rng=np.random.default_rng(seed),
    )


def _histories() -> dict[str, list[OHLCVBar]]:
    return {sym: _bars(_random_walk(seed)) for seed, sym in enumerate(["AAA", "BBB", "CCC", "DDD", "EEE"])}


def test_historical_mean_is_zero_for_short_histories() -> None:
    """Fewer than two usable prices yields exactly 0.0, never NaN."""

    engine = _engine()
    histories = {
        "ONE": _bars([100.0]),
        "NONE": [],
        "BAD": _bars([100.0, 0.0, -1.0]),
        "OK": _bars([100.0 * 1.01**k for k in range(11)]),
    }
    returns = engine.estimate_expected_returns(histories, "historical_mean", lookback=504)
    assert returns["ONE"] == 0.0
    assert returns["NONE"] == 0.0
    assert returns["BAD"] == 0.0
    assert returns["OK"] == pytest.approx(252 * math.log(1.01))
    assert insufficient_symbols(histories, 504) == ["ONE", "NONE", "BAD"]


def test_lookback_uses_most_recent_closes() -> None:
    """Only the last `lookback` valid closes contribute."""

    closes = [100.0, 50.0, 100.0] + [100.0 * 1.02**k for k in range(5)]
    returns = _engine().estimate_expected_returns({"X": _bars(closes)}, "historical_mean", lookback=5)
    assert returns["X"] == pytest.approx(252 * math.log(1.02))


def test_exponential_weighting_matches_mean_for_constant_returns() -> None:
    closes = [100.0 * 1.005**k for k in range(30)]
    returns = _engine().estimate_expected_returns(
        {"X": _bars(closes)}, "exponential_weighted", lookback=504, decay=0.9
    )
    assert returns["X"] == pytest.approx(252 * math.log(1.005))


def test_exponential_weighting_favours_recent_returns() -> None:
    """A late rally lifts the EWMA estimate above the simple mean."""

    closes = [100.0] * 20 + [100.0 * 1.03**k for k in range(1, 6)]
    histories = {"X": _bars(closes)}
    engine = _engine()
    simple = engine.estimate_expected_returns(histories, "historical_mean", lookback=504)["X"]
    ewma = engine.estimate_expected_returns(histories, "exponential_weighted", lookback=504)["X"]
    assert ewma > simple


def test_capm_uses_beta_against_market_proxy() -> None:
    """An asset moving twice as much as the market has beta 2."""

    rng = np.random.default_rng(3)
    market_log = rng.normal(0.0, 0.01, size=120)
    market = 100.0 * np.exp(np.concatenate([[0.0], np.cumsum(market_log)]))
    levered = 50.0 * np.exp(np.concatenate([[0.0], np.cumsum(2.0 * market_log)]))

    histories = {"LEV": _bars(levered.tolist()), "SPY": _bars(market.tolist())}
    returns = _engine().estimate_expected_returns(
        histories, "capm", lookback=504, risk_free_rate=0.02, market_return=0.08
    )
    assert returns["LEV"] == pytest.approx(0.02 + 2.0 * 0.06)
    assert returns["SPY"] == pytest.approx(0.08)


def test_capm_defaults_beta_to_one_without_market_data() -> None:
    histories = {"AAA": _bars(_random_walk(1)), "BBB": _bars([10.0])}
    returns = _engine().estimate_expected_returns(histories, "capm", lookback=504, market_history=[])
    assert returns == {"AAA": pytest.approx(0.08), "BBB": pytest.approx(0.08)}


def test_black_litterman_returns_without_views_equal_equilibrium() -> None:
    histories = _histories()
    engine = _engine()
    cov = engine.estimate_covariance_matrix(histories, "sample", lookback=504)
    returns = engine.estimate_expected_returns(histories, "black_litterman", lookback=504)
    expected = implied_equilibrium_returns(cov.matrix, np.full(5, 0.2), 3.0)
    assert [returns[s] for s in cov.symbols] == pytest.approx(expected.tolist())


def test_black_litterman_returns_use_supplied_covariance() -> None:
    """Π is implied from the chosen covariance estimate, not the sample one."""

    histories = _histories()
    engine = _engine()
    shrunk = engine.estimate_covariance_matrix(
        histories, "shrinkage", lookback=504, shrinkage_intensity=0.5
    )
    returns = engine.estimate_expected_returns(
        histories, "black_litterman", lookback=504, covariance=shrunk
    )
    expected = implied_equilibrium_returns(shrunk.matrix, np.full(5, 0.2), 3.0)
    assert [returns[s] for s in shrunk.symbols] == pytest.approx(expected.tolist())

    sample_based = engine.estimate_expected_returns(histories, "black_litterman", lookback=504)
    assert [sample_based[s] for s in shrunk.symbols] != pytest.approx(expected.tolist())


def test_sample_covariance_defaults_for_insufficient_history() -> None:
    """Symbols with fewer than two log-returns get variance 0.01 and no covariance."""

    histories = {"AAA": _bars(_random_walk(1)), "TWO": _bars([100.0, 101.0])}
    cov = _engine().estimate_covariance_matrix(histories, "sample", lookback=504)
    assert cov.symbols == ["AAA", "TWO"]
    assert cov.matrix[1, 1] == 0.01
    assert cov.matrix[0, 1] == 0.0
    assert cov.matrix[1, 0] == 0.0
    assert cov.matrix[0, 0] > 0.0


def test_shrinkage_with_zero_intensity_equals_sample() -> None:
    histories = _histories()
    engine = _engine()
    sample = engine.estimate_covariance_matrix(histories, "sample", lookback=504)
    shrunk = engine.estimate_covariance_matrix(
        histories, "shrinkage", lookback=504, shrinkage_intensity=0.0
    )
    assert np.array_equal(sample.matrix, shrunk.matrix)
    assert shrunk.shrinkage_intensity == 0.0


def test_shrinkage_moves_toward_constant_correlation_target() -> None:
    histories = _histories()
    engine = _engine()
    full = engine.estimate_covariance_matrix(
        histories, "shrinkage", lookback=504, shrinkage_intensity=1.0
    )
    diag = np.diag(full.matrix)
    assert np.allclose(diag, diag[0])
    off = full.matrix[~np.eye(5, dtype=bool)]
    assert np.allclose(off, off[0])

    default = engine.estimate_covariance_matrix(histories, "shrinkage", lookback=504)
    assert default.shrinkage_intensity == pytest.approx(0.1)


def test_auto_shrinkage_intensity_is_bounded() -> None:
    cov = _engine().estimate_covariance_matrix(
        _histories(), "shrinkage", lookback=504, shrinkage_intensity="auto"
    )
    assert cov.shrinkage_intensity is not None
    assert 0.0 <= cov.shrinkage_intensity <= 1.0

    with pytest.raises(ValueError):
        ShrinkageCovariance(intensity=1.5)


def test_factor_model_keeps_sample_variances_on_diagonal() -> None:
    histories = _histories()
    engine = _engine()
    sample = engine.estimate_covariance_matrix(histories, "sample", lookback=504)
    factor = engine.estimate_covariance_matrix(histories, "factor_model", lookback=504)
    assert np.allclose(np.diag(factor.matrix), np.diag(sample.matrix), atol=1e-12)
    assert np.allclose(factor.matrix, factor.matrix.T)
    assert not np.allclose(factor.matrix, sample.matrix)

    small = {k: v for k, v in list(histories.items())[:2]}
    assert np.allclose(
        engine.estimate_covariance_matrix(small, "factor_model", lookback=504).matrix,
        engine.estimate_covariance_matrix(small, "sample", lookback=504).matrix,
    )


def test_unknown_methods_raise_with_offending_name() -> None:
    engine = _engine()
    with pytest.raises(UnknownMethodError) as excinfo:
        engine.estimate_expected_returns({}, "momentum")
    assert excinfo.value.method == "momentum"

    with pytest.raises(UnknownMethodError) as excinfo:
        engine.estimate_covariance_matrix({}, "garch")
    assert "garch" in str(excinfo.value)


def test_presets_resolve_and_default_to_moderate() -> None:
    assert estimation_preset("conservative").covariance_options == {"shrinkage_intensity": 0.2}
    assert estimation_preset("capm_based").returns_method == "capm"
    unknown = estimation_preset("yolo")
    assert unknown.returns_method == "exponential_weighted"
    assert unknown.covariance_options == {"shrinkage_intensity": 0.1}


def test_monte_carlo_scenarios_are_reproducible_with_seed() -> None:
    cov = CovarianceEstimate(symbols=["A", "B"], matrix=np.array([[0.04, 0.01], [0.01, 0.02]]))
    returns = {"B": 0.05, "A": 0.10}

    first = _engine(seed=42).generate_monte_carlo_scenarios(returns, cov, 500)
    second = _engine(seed=42).generate_monte_carlo_scenarios(returns, cov, 500)
    assert first.shape == (500, 2)
    assert np.array_equal(first, second)

    lazy = list(_engine(seed=42).iter_monte_carlo_scenarios(returns, cov, 25))
    assert len(lazy) == 25
    assert all(s.shape == (2,) for s in lazy)


def test_monte_carlo_scenarios_match_inputs_on_average() -> None:
    mu = np.array([0.10, 0.05])
    cov = np.array([[0.04, 0.0], [0.0, 0.01]])
    scenarios = _engine(seed=5).generate_monte_carlo_scenarios(mu, cov, 20_000)
    assert scenarios.mean(axis=0) == pytest.approx(mu.tolist(), abs=0.01)
    assert np.cov(scenarios.T) == pytest.approx(cov, abs=0.005)


def test_monte_carlo_scenario_count_is_bounded() -> None:
    engine = _engine(max_scenarios=10)
    cov = np.eye(2) * 0.01
    with pytest.raises(ComputationLimitError):
        engine.generate_monte_carlo_scenarios([0.1, 0.1], cov, 11)
    with pytest.raises(ComputationLimitError):
        list(engine.iter_monte_carlo_scenarios([0.1, 0.1], cov, 0))
