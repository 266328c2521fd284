from __future__ import annotations

import numpy as np
import pytest

from portfoliolab.black_litterman import BlackLittermanViews, implied_equilibrium_returns
from portfoliolab.config import Settings
from portfoliolab.estimation import InputEstimationEngine
from portfoliolab.exceptions import (
    ComputationLimitError,
    DimensionMismatchError,
    OptimizationInfeasibleError,
    UnknownMethodError,
)
from portfoliolab.optimization import (
    Constraints,
    CvarOptimizer,
    OptimizationMethod,
    PortfolioOptimizationEngine,
    apply_constraints,
    calculate_cvar,
    equal_weights,
    risk_contributions,
)

MU_2 = np.array([0.10, 0.05])
COV_2 = np.array([[0.04, 0.0], [0.0, 0.01]])


def _engine(seed: int = 11, **overrides: object) -> PortfolioOptimizationEngine:
    settings = Settings(**overrides)  # type: ignore[arg-type]
    estimation = InputEstimationEngine(settings=settings, rng=np.random.default_rng(seed))
    return PortfolioOptimizationEngine(
        risk_free_rate=0.02, settings=settings, estimation_engine=estimation
    )


def _four_asset_problem() -> tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(2024)
    a = rng.normal(size=(4, 4))
    cov = a @ a.T / 20.0 + np.eye(4) * 0.01
    mu = np.array([0.08, 0.12, 0.05, 0.10])
    return mu, cov


@pytest.mark.parametrize("method", [m.value for m in OptimizationMethod])
def test_long_only_weights_are_non_negative_and_fully_invested(method: str) -> None:
    """Every optimiser honours long-only and sums to one after constraints."""

    mu, cov = _four_asset_problem()
    constraints = Constraints(long_only=True, max_weight=0.5, min_weight=0.01)
    result = _engine().optimize(method, mu, cov, constraints)

    assert result.weights.shape == (4,)
    assert (result.weights >= 0.0).all()
    assert float(result.weights.sum()) == pytest.approx(1.0, abs=1e-6)
    assert result.expected_volatility >= 0.0
    assert result.method == method


def test_max_sharpe_closed_form_two_assets() -> None:
    """Σ⁻¹(μ − Rf) normalised: [2, 3] / 5 for the textbook two-asset case."""

    result = _engine().optimize("max-sharpe", MU_2, COV_2, Constraints())
    assert result.weights.tolist() == pytest.approx([0.4, 0.6], abs=1e-6)
    assert result.expected_return == pytest.approx(0.07)
    assert result.expected_volatility == pytest.approx(0.1)
    assert result.sharpe_ratio == pytest.approx(0.5)

    # The higher-Sharpe asset carries the larger share of portfolio risk.
    contributions = risk_contributions(result.weights, COV_2)
    assert contributions[0] > contributions[1]
    assert float(contributions.sum()) == pytest.approx(result.expected_volatility)


def test_max_sharpe_single_asset_is_fully_invested() -> None:
    """With one asset there is only one place to put the money."""

    constraints = Constraints(long_only=True, max_weight=0.3, min_weight=0.01)
    result = _engine().optimize("max-sharpe", [0.01], [[0.09]], constraints)
    assert result.weights.tolist() == [1.0]


def test_risk_parity_equal_variances_converges_to_half_half() -> None:
    cov = np.array([[0.04, 0.0], [0.0, 0.04]])
    result = _engine().optimize("risk-parity", [0.1, 0.05], cov, Constraints())
    assert result.weights.tolist() == pytest.approx([0.5, 0.5], abs=1e-6)


def test_risk_parity_equalises_risk_contributions() -> None:
    result = _engine().optimize("risk-parity", MU_2, COV_2, Constraints())
    assert result.weights.tolist() == pytest.approx([1.0 / 3.0, 2.0 / 3.0], abs=1e-6)
    contributions = risk_contributions(result.weights, COV_2)
    assert contributions[0] == pytest.approx(contributions[1], rel=1e-4)


def test_mean_variance_hits_target_return() -> None:
    engine = _engine()
    result = engine.optimize("mean-variance", MU_2, COV_2, Constraints(), target_return=0.08)
    assert result.weights.tolist() == pytest.approx([0.6, 0.4], abs=1e-4)
    assert result.expected_return == pytest.approx(0.08, abs=1e-6)


def test_mean_variance_without_target_is_minimum_variance() -> None:
    result = _engine().optimize("mean-variance", MU_2, COV_2, Constraints())
    # Inverse-variance weights for a diagonal covariance.
    assert result.weights.tolist() == pytest.approx([0.2, 0.8], abs=1e-4)


def test_mean_variance_rejects_unreachable_target() -> None:
    with pytest.raises(OptimizationInfeasibleError):
        _engine().optimize("mean-variance", MU_2, COV_2, Constraints(), target_return=0.2)


def test_min_volatility_respects_return_floor() -> None:
    mu, cov = _four_asset_problem()
    result = _engine().optimize("min-volatility", mu, cov, Constraints())
    assert result.expected_return >= 0.05 * 1.1 - 1e-6


def test_risk_tolerance_maps_to_frontier_targets() -> None:
    engine = _engine()
    assert engine.target_return_for_risk_tolerance(MU_2, COV_2, 100.0) == pytest.approx(0.10)
    # The minimum-variance portfolio returns 0.06; lower targets are lifted to it.
    assert engine.target_return_for_risk_tolerance(MU_2, COV_2, 0.0) == pytest.approx(0.06, abs=1e-5)


def test_efficient_frontier_shape() -> None:
    """At most num_points points, volatility non-decreasing with return."""

    points = _engine().generate_efficient_frontier(MU_2, COV_2, 10)
    assert 0 < len(points) <= 10
    vols = [p.risk for p in points]
    rets = [p.expected_return for p in points]
    assert all(v >= 0.0 for v in vols)
    assert all(b >= a for a, b in zip(vols, vols[1:]))
    assert all(b >= a - 1e-9 for a, b in zip(rets, rets[1:]))
    assert 0.095 <= rets[-1] <= 0.10 + 1e-6
    for p in points:
        assert sum(p.weights) == pytest.approx(1.0, abs=1e-6)
        assert min(p.weights) >= 0.0


def test_efficient_frontier_point_limits() -> None:
    engine = _engine(max_frontier_points=20)
    with pytest.raises(ComputationLimitError):
        engine.generate_efficient_frontier(MU_2, COV_2, 0)
    with pytest.raises(ComputationLimitError):
        engine.generate_efficient_frontier(MU_2, COV_2, 21)


def test_cvar_smaller_tail_is_worse() -> None:
    """CVaR at 5% is never above CVaR at 10% for the same weights."""

    estimation = InputEstimationEngine(settings=Settings(), rng=np.random.default_rng(8))
    mu, cov = _four_asset_problem()
    scenarios = estimation.generate_monte_carlo_scenarios(mu, cov, 2000)
    for weights in (equal_weights(4), np.array([0.7, 0.1, 0.1, 0.1]), np.array([0.0, 0.0, 1.0, 0.0])):
        assert calculate_cvar(weights, scenarios, 0.05) <= calculate_cvar(weights, scenarios, 0.10)


def test_calculate_cvar_averages_worst_scenarios() -> None:
    scenarios = np.array([[-0.30], [-0.10], [0.00], [0.05], [0.10]] * 4)
    # Worst floor(0.1 * 20) = 2 outcomes are both -0.30.
    assert calculate_cvar(np.array([1.0]), scenarios, 0.10) == pytest.approx(-0.30)
    # Tiny alpha still averages at least one scenario.
    assert calculate_cvar(np.array([1.0]), scenarios, 0.01) == pytest.approx(-0.30)


def test_cvar_optimizer_beats_equal_weight_on_its_scenarios() -> None:
    estimation = InputEstimationEngine(settings=Settings(), rng=np.random.default_rng(9))
    mu, cov = _four_asset_problem()
    scenarios = estimation.generate_monte_carlo_scenarios(mu, cov, 1000)

    result = CvarOptimizer(scenarios=scenarios).optimize(mu, cov, Constraints())
    assert result.cvar is not None
    assert result.cvar >= calculate_cvar(equal_weights(4), scenarios, 0.05) - 1e-7


def test_cvar_runs_are_reproducible_with_seeded_engine() -> None:
    mu, cov = _four_asset_problem()
    first = _engine(seed=3).optimize("cvar-min", mu, cov, Constraints())
    second = _engine(seed=3).optimize("cvar-min", mu, cov, Constraints())
    assert np.array_equal(first.weights, second.weights)
    assert first.cvar == second.cvar


def test_black_litterman_without_views_returns_market_portfolio() -> None:
    mu, cov = _four_asset_problem()
    market = np.array([0.4, 0.3, 0.2, 0.1])
    result = _engine().optimize("black-litterman", mu, cov, Constraints(), market_weights=market)
    assert result.weights.tolist() == pytest.approx(market.tolist())
    assert result.implied_returns is not None
    assert result.implied_returns.tolist() == pytest.approx(
        implied_equilibrium_returns(cov, market, 3.0).tolist()
    )


def test_black_litterman_bullish_view_tilts_weights() -> None:
    cov = np.diag([0.04, 0.04, 0.04])
    mu = np.array([0.06, 0.06, 0.06])
    views = BlackLittermanViews.from_symbol_views(
        ["A", "B", "C"], [{"weights": {"A": 1.0}, "expected_return": 0.30}]
    )
    result = _engine().optimize("black-litterman", mu, cov, Constraints(), views=views)
    assert result.weights[0] > 1.0 / 3.0
    assert result.weights[1] == pytest.approx(result.weights[2])
    assert result.implied_returns is not None
    assert result.implied_returns[0] > result.implied_returns[1]


def test_apply_constraints_clamps_then_renormalises() -> None:
    weights = apply_constraints(
        np.array([-0.2, 0.7, 0.5]), Constraints(long_only=True, max_weight=0.6)
    )
    assert weights.tolist() == pytest.approx([0.0, 0.6 / 1.1, 0.5 / 1.1])

    shorted = apply_constraints(np.array([-0.2, 0.7, 0.5]), Constraints(long_only=False))
    assert shorted.tolist() == pytest.approx([-0.2, 0.7, 0.5])

    assert apply_constraints(np.array([-1.0, -2.0]), Constraints()).tolist() == [0.5, 0.5]


def test_engine_validates_inputs() -> None:
    engine = _engine()
    with pytest.raises(DimensionMismatchError):
        engine.optimize("max-sharpe", [0.1, 0.2, 0.3], COV_2)
    with pytest.raises(UnknownMethodError) as excinfo:
        engine.optimize("hrp", MU_2, COV_2)
    assert excinfo.value.method == "hrp"
