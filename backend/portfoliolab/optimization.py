"""Portfolio optimisation engine.

Every optimiser consumes an annualised expected-return vector and covariance
matrix in the same asset order and produces a weight vector summing to 1.

Constraints are applied after the solve by `apply_constraints`
(clamp-and-renormalise). This is an approximation: once weights have been
clamped the result is no longer the exact optimum of the objective under the
constraint set. The efficient frontier is the exception and is solved as a
long-only QP with no post-processing.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Sequence

import numpy as np
from scipy.optimize import linprog, minimize

from .black_litterman import (
    BlackLittermanViews,
    implied_equilibrium_returns,
    posterior_returns,
)
from .config import Settings, get_settings
from .exceptions import (
    ComputationLimitError,
    DimensionMismatchError,
    OptimizationInfeasibleError,
    UnknownMethodError,
)
from .estimation import InputEstimationEngine

logger = logging.getLogger(__name__)

_JITTER = 1e-8
_TOLERANCE = 1e-6


class OptimizationMethod(str, Enum):
    MEAN_VARIANCE = "mean-variance"
    MAX_SHARPE = "max-sharpe"
    RISK_PARITY = "risk-parity"
    MIN_VOLATILITY = "min-volatility"
    CVAR_MIN = "cvar-min"
    BLACK_LITTERMAN = "black-litterman"

    @classmethod
    def parse(cls, value: "str | OptimizationMethod") -> "OptimizationMethod":
        try:
            return cls(value)
        except ValueError:
            raise UnknownMethodError("optimization", str(value)) from None


METHOD_DESCRIPTIONS = {
    OptimizationMethod.MEAN_VARIANCE: (
        "Mean-Variance",
        "Markowitz quadratic programme: minimum variance at a target return "
        "derived from risk tolerance.",
    ),
    OptimizationMethod.MAX_SHARPE: (
        "Maximum Sharpe Ratio",
        "Closed-form tangency portfolio maximising excess return per unit of risk.",
    ),
    OptimizationMethod.RISK_PARITY: (
        "Risk Parity",
        "Iterative allocation where every asset contributes equal risk.",
    ),
    OptimizationMethod.MIN_VOLATILITY: (
        "Minimum Volatility",
        "Lowest-variance portfolio subject to a small return floor.",
    ),
    OptimizationMethod.CVAR_MIN: (
        "CVaR Minimisation",
        "Linear programme minimising expected loss in the worst 5% of "
        "Monte Carlo scenarios.",
    ),
    OptimizationMethod.BLACK_LITTERMAN: (
        "Black-Litterman",
        "Market-implied equilibrium returns blended with investor views.",
    ),
}


@dataclass
class Constraints:
    """Post-hoc weight bounds, expressed as fractions of the portfolio."""

    long_only: bool = True
    max_weight: float | None = None
    min_weight: float | None = None


@dataclass
class OptimizerResult:
    method: str
    weights: np.ndarray
    expected_return: float
    expected_volatility: float
    sharpe_ratio: float
    cvar: float | None = None
    risk_contributions: np.ndarray | None = None
    implied_returns: np.ndarray | None = None
    diagnostics: dict[str, Any] = field(default_factory=dict)


@dataclass
class FrontierPoint:
    risk: float
    expected_return: float
    weights: List[float]


# ---------------------------------------------------------------------------
# Portfolio statistics
# ---------------------------------------------------------------------------


def validate_inputs(
    returns: Sequence[float] | np.ndarray, covariance: Sequence[Sequence[float]] | np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    mu = np.asarray(returns, dtype=float).reshape(-1)
    cov = np.asarray(covariance, dtype=float)
    n = mu.size
    if cov.shape != (n, n):
        raise DimensionMismatchError(
            f"Return vector of size {n} does not match covariance shape {cov.shape}"
        )
    return mu, cov


def portfolio_return(weights: np.ndarray, returns: np.ndarray) -> float:
    return float(np.asarray(weights, dtype=float) @ np.asarray(returns, dtype=float))


def portfolio_volatility(weights: np.ndarray, covariance: np.ndarray) -> float:
    w = np.asarray(weights, dtype=float)
    variance = float(w @ np.asarray(covariance, dtype=float) @ w)
    return math.sqrt(variance) if variance > 0.0 else 0.0


def sharpe_ratio(
    weights: np.ndarray,
    returns: np.ndarray,
    covariance: np.ndarray,
    risk_free_rate: float = 0.02,
) -> float:
    vol = portfolio_volatility(weights, covariance)
    if vol <= 0.0:
        return 0.0
    return (portfolio_return(weights, returns) - risk_free_rate) / vol


def marginal_risk_contributions(weights: np.ndarray, covariance: np.ndarray) -> np.ndarray:
    """(Σw)ᵢ / σ; zeros when the portfolio has no volatility."""

    w = np.asarray(weights, dtype=float)
    vol = portfolio_volatility(w, covariance)
    if vol <= 0.0:
        return np.zeros_like(w)
    return np.asarray(covariance, dtype=float) @ w / vol


def risk_contributions(weights: np.ndarray, covariance: np.ndarray) -> np.ndarray:
    """wᵢ·(Σw)ᵢ / σ; the contributions sum to the portfolio volatility."""

    w = np.asarray(weights, dtype=float)
    return w * marginal_risk_contributions(w, covariance)


def calculate_cvar(weights: np.ndarray, scenarios: np.ndarray, alpha: float = 0.05) -> float:
    """Mean of the worst max(1, ⌊α·N⌋) scenario portfolio returns.

    Expressed as a return, so a larger loss is a more negative number and
    CVaR at a smaller α is never greater than CVaR at a larger α.
    """

    if not 0.0 < alpha <= 1.0:
        raise ValueError(f"alpha must lie in (0, 1], got {alpha}")
    portfolio_returns = np.sort(np.asarray(scenarios, dtype=float) @ np.asarray(weights, dtype=float))
    if portfolio_returns.size == 0:
        return 0.0
    tail = max(1, int(math.floor(alpha * portfolio_returns.size)))
    return float(portfolio_returns[:tail].mean())


def equal_weights(n: int) -> np.ndarray:
    if n <= 0:
        return np.array([], dtype=float)
    return np.full(n, 1.0 / float(n), dtype=float)


def apply_constraints(weights: np.ndarray, constraints: Constraints | None = None) -> np.ndarray:
    """Zero negatives (long-only), cap, floor, then renormalise to sum 1."""

    w = np.asarray(weights, dtype=float).copy()
    if w.size == 0:
        return w
    if w.size == 1:
        return np.array([1.0])
    constraints = constraints or Constraints()
    if constraints.long_only:
        w = np.maximum(w, 0.0)
    if constraints.max_weight is not None:
        w = np.minimum(w, float(constraints.max_weight))
    if constraints.min_weight is not None:
        w = np.maximum(w, float(constraints.min_weight))
    total = float(w.sum())
    if total <= 0.0 or not np.isfinite(w).all():
        return equal_weights(w.size)
    return w / total


def _solve_min_variance(
    mu: np.ndarray,
    cov: np.ndarray,
    *,
    long_only: bool,
    target: float | None = None,
    floor: float | None = None,
) -> np.ndarray:
    """SLSQP quadratic programme: min wᵗΣw s.t. Σw = 1 and optional return terms."""

    n = mu.size
    if n == 1:
        return np.array([1.0])

    cons: list[dict[str, Any]] = [
        {"type": "eq", "fun": lambda w: np.sum(w) - 1.0, "jac": lambda w: np.ones(n)}
    ]
    if target is not None:
        cons.append({"type": "eq", "fun": lambda w: w @ mu - target, "jac": lambda w: mu})
    if floor is not None:
        cons.append({"type": "ineq", "fun": lambda w: w @ mu - floor, "jac": lambda w: mu})
    bounds = [(0.0, 1.0)] * n if long_only else None

    result = minimize(
        fun=lambda w: float(w @ cov @ w),
        x0=equal_weights(n),
        jac=lambda w: 2.0 * cov @ w,
        method="SLSQP",
        bounds=bounds,
        constraints=cons,
        options={"ftol": 1e-12, "maxiter": 1000},
    )
    w = np.asarray(result.x, dtype=float)
    if not result.success or not np.isfinite(w).all():
        raise OptimizationInfeasibleError(f"Quadratic programme did not converge: {result.message}")
    if abs(float(w.sum()) - 1.0) > _TOLERANCE:
        raise OptimizationInfeasibleError("Budget constraint violated by solver")
    if target is not None and abs(float(w @ mu) - target) > _TOLERANCE:
        raise OptimizationInfeasibleError(f"Target return {target:.6f} not attained")
    if floor is not None and float(w @ mu) < floor - _TOLERANCE:
        raise OptimizationInfeasibleError(f"Return floor {floor:.6f} not attained")

    if long_only:
        w = np.clip(w, 0.0, None)
        w = w / float(w.sum())
    return w


def check_target_feasible(mu: np.ndarray, target: float, *, long_only: bool) -> None:
    if mu.size == 0:
        raise OptimizationInfeasibleError("Cannot target a return with no assets")
    lo, hi = float(mu.min()), float(mu.max())
    if long_only or hi - lo < 1e-12:
        if target < lo - 1e-9 or target > hi + 1e-9:
            raise OptimizationInfeasibleError(
                f"Target return {target:.6f} outside achievable range "
                f"[{lo:.6f}, {hi:.6f}]"
            )


def minimum_variance_weights(cov: np.ndarray, *, long_only: bool = True) -> np.ndarray:
    """Global minimum-variance portfolio."""

    n = cov.shape[0]
    if n == 0:
        return np.array([], dtype=float)
    if long_only:
        return _solve_min_variance(np.zeros(n), cov, long_only=True)
    inv = np.linalg.pinv(cov + np.eye(n) * _JITTER)
    ones = np.ones(n)
    denom = float(ones @ inv @ ones)
    if denom <= 0.0:
        return equal_weights(n)
    w = inv @ ones / denom
    if not np.isfinite(w).all():
        return equal_weights(n)
    return w


# ---------------------------------------------------------------------------
# Optimiser variants
# ---------------------------------------------------------------------------


class Optimizer:
    """Common contract for every optimisation objective."""

    method: OptimizationMethod

    def __init__(self, *, risk_free_rate: float = 0.02) -> None:
        self.risk_free_rate = risk_free_rate

    def optimize(
        self,
        returns: Sequence[float] | np.ndarray,
        covariance: Sequence[Sequence[float]] | np.ndarray,
        constraints: Constraints | None = None,
    ) -> OptimizerResult:
        mu, cov = validate_inputs(returns, covariance)
        if mu.size == 0:
            raise DimensionMismatchError("Cannot optimise an empty universe")
        return self._optimize(mu, cov, constraints or Constraints())

    def _optimize(self, mu: np.ndarray, cov: np.ndarray, constraints: Constraints) -> OptimizerResult:
        raise NotImplementedError

    def _result(
        self,
        weights: np.ndarray,
        mu: np.ndarray,
        cov: np.ndarray,
        **extra: Any,
    ) -> OptimizerResult:
        return OptimizerResult(
            method=self.method.value,
            weights=weights,
            expected_return=portfolio_return(weights, mu),
            expected_volatility=portfolio_volatility(weights, cov),
            sharpe_ratio=sharpe_ratio(weights, mu, cov, self.risk_free_rate),
            risk_contributions=risk_contributions(weights, cov),
            **extra,
        )


class MeanVarianceOptimizer(Optimizer):
    """Minimum variance at `target_return`; the global minimum without one."""

    method = OptimizationMethod.MEAN_VARIANCE

    def __init__(self, *, target_return: float | None = None, risk_free_rate: float = 0.02) -> None:
        super().__init__(risk_free_rate=risk_free_rate)
        self.target_return = target_return

    def _optimize(self, mu: np.ndarray, cov: np.ndarray, constraints: Constraints) -> OptimizerResult:
        if self.target_return is None:
            raw = minimum_variance_weights(cov, long_only=constraints.long_only)
        else:
            check_target_feasible(mu, self.target_return, long_only=constraints.long_only)
            raw = _solve_min_variance(
                mu, cov, long_only=constraints.long_only, target=self.target_return
            )
        weights = apply_constraints(raw, constraints)
        return self._result(weights, mu, cov, diagnostics={"target_return": self.target_return})


class MaxSharpeOptimizer(Optimizer):
    """Tangency portfolio Σ⁻¹(μ − Rf) / 1ᵗΣ⁻¹(μ − Rf)."""

    method = OptimizationMethod.MAX_SHARPE

    def _optimize(self, mu: np.ndarray, cov: np.ndarray, constraints: Constraints) -> OptimizerResult:
        n = mu.size
        inv = np.linalg.pinv(cov + np.eye(n) * _JITTER)
        raw = inv @ (mu - self.risk_free_rate)
        denom = float(raw.sum())
        if abs(denom) < 1e-12 or not np.isfinite(raw).all():
            logger.warning("Tangency denominator vanished; using equal weights")
            raw = equal_weights(n)
        else:
            raw = raw / denom
        weights = apply_constraints(raw, constraints)
        return self._result(weights, mu, cov)


class RiskParityOptimizer(Optimizer):
    """Equal risk contribution via multiplicative updates."""

    method = OptimizationMethod.RISK_PARITY

    def __init__(
        self,
        *,
        max_iterations: int = 100,
        tolerance: float = 1e-6,
        risk_free_rate: float = 0.02,
    ) -> None:
        super().__init__(risk_free_rate=risk_free_rate)
        self.max_iterations = max_iterations
        self.tolerance = tolerance

    def solve(self, cov: np.ndarray) -> tuple[np.ndarray, int]:
        n = cov.shape[0]
        w = equal_weights(n)
        iterations = 0
        for iterations in range(1, self.max_iterations + 1):
            vol = portfolio_volatility(w, cov)
            if vol <= 0.0:
                break
            target = vol / n
            contributions = w * (cov @ w) / vol
            updated = w.copy()
            positive = contributions > 0.0
            updated[positive] = w[positive] * np.sqrt(target / contributions[positive])
            total = float(updated.sum())
            if total <= 0.0:
                break
            updated /= total
            change = float(np.abs(updated - w).sum())
            w = updated
            if change < self.tolerance:
                break
        return w, iterations

    def _optimize(self, mu: np.ndarray, cov: np.ndarray, constraints: Constraints) -> OptimizerResult:
        raw, iterations = self.solve(cov)
        weights = apply_constraints(raw, constraints)
        return self._result(weights, mu, cov, diagnostics={"iterations": iterations})


class MinVolatilityOptimizer(Optimizer):
    """Minimum variance with a return floor slightly above the worst asset."""

    method = OptimizationMethod.MIN_VOLATILITY

    @staticmethod
    def return_floor(mu: np.ndarray) -> float:
        lo, hi = float(mu.min()), float(mu.max())
        return min(lo + 0.1 * abs(lo), hi)

    def _optimize(self, mu: np.ndarray, cov: np.ndarray, constraints: Constraints) -> OptimizerResult:
        floor = self.return_floor(mu)
        raw = _solve_min_variance(mu, cov, long_only=constraints.long_only, floor=floor)
        weights = apply_constraints(raw, constraints)
        return self._result(weights, mu, cov, diagnostics={"return_floor": floor})


class CvarOptimizer(Optimizer):
    """Rockafellar-Uryasev linear programme over Monte Carlo scenarios.

    Minimises ζ + 1/(α·S) · Σ uₛ subject to uₛ ≥ −rₛᵗw − ζ, uₛ ≥ 0 and
    Σw = 1, where rₛ are scenario returns and ζ is the value-at-risk.
    """

    method = OptimizationMethod.CVAR_MIN

    def __init__(
        self,
        *,
        alpha: float = 0.05,
        num_scenarios: int = 1000,
        scenarios: np.ndarray | None = None,
        estimation_engine: InputEstimationEngine | None = None,
        risk_free_rate: float = 0.02,
    ) -> None:
        super().__init__(risk_free_rate=risk_free_rate)
        if not 0.0 < alpha < 1.0:
            raise ValueError(f"alpha must lie in (0, 1), got {alpha}")
        self.alpha = alpha
        self.num_scenarios = num_scenarios
        self.scenarios = scenarios
        self._estimation = estimation_engine

    def _scenarios(self, mu: np.ndarray, cov: np.ndarray) -> np.ndarray:
        if self.scenarios is not None:
            scenarios = np.asarray(self.scenarios, dtype=float)
            if scenarios.ndim != 2 or scenarios.shape[1] != mu.size:
                raise DimensionMismatchError(
                    f"Scenario matrix {scenarios.shape} does not match {mu.size} assets"
                )
            return scenarios
        engine = self._estimation or InputEstimationEngine()
        return engine.generate_monte_carlo_scenarios(mu, cov, self.num_scenarios)

    def solve(self, scenarios: np.ndarray, constraints: Constraints) -> np.ndarray:
        s, n = scenarios.shape
        n_vars = n + 1 + s

        c = np.zeros(n_vars)
        c[n] = 1.0
        c[n + 1 :] = 1.0 / (self.alpha * s)

        # -rₛᵗw - ζ - uₛ ≤ 0
        a_ub = np.zeros((s, n_vars))
        a_ub[:, :n] = -scenarios
        a_ub[:, n] = -1.0
        a_ub[np.arange(s), n + 1 + np.arange(s)] = -1.0
        b_ub = np.zeros(s)

        a_eq = np.zeros((1, n_vars))
        a_eq[0, :n] = 1.0
        b_eq = np.array([1.0])

        cap = float(constraints.max_weight) if constraints.max_weight is not None else 1.0
        weight_bounds = (0.0, 1.0) if constraints.long_only else (-max(cap, 1.0), max(cap, 1.0))
        bounds = [weight_bounds] * n + [(None, None)] + [(0.0, None)] * s

        result = linprog(
            c, A_ub=a_ub, b_ub=b_ub, A_eq=a_eq, b_eq=b_eq, bounds=bounds, method="highs"
        )
        if not result.success:
            raise OptimizationInfeasibleError(f"CVaR linear programme failed: {result.message}")
        return np.asarray(result.x[:n], dtype=float)

    def _optimize(self, mu: np.ndarray, cov: np.ndarray, constraints: Constraints) -> OptimizerResult:
        scenarios = self._scenarios(mu, cov)
        raw = np.array([1.0]) if mu.size == 1 else self.solve(scenarios, constraints)
        weights = apply_constraints(raw, constraints)
        cvar = calculate_cvar(weights, scenarios, self.alpha)
        return self._result(
            weights,
            mu,
            cov,
            cvar=cvar,
            diagnostics={"alpha": self.alpha, "num_scenarios": int(scenarios.shape[0])},
        )


class BlackLittermanOptimizer(Optimizer):
    """Market equilibrium weights, tilted by investor views when given."""

    method = OptimizationMethod.BLACK_LITTERMAN

    def __init__(
        self,
        *,
        market_weights: Sequence[float] | np.ndarray | None = None,
        views: BlackLittermanViews | None = None,
        risk_aversion: float = 3.0,
        tau: float = 0.025,
        risk_free_rate: float = 0.02,
    ) -> None:
        super().__init__(risk_free_rate=risk_free_rate)
        self.market_weights = market_weights
        self.views = views
        self.risk_aversion = risk_aversion
        self.tau = tau

    def _market_weights(self, n: int) -> np.ndarray:
        if self.market_weights is None:
            return equal_weights(n)
        w = np.clip(np.asarray(self.market_weights, dtype=float).reshape(-1), 0.0, None)
        if w.size != n:
            raise DimensionMismatchError(f"{w.size} market weights for {n} assets")
        total = float(w.sum())
        return w / total if total > 0.0 else equal_weights(n)

    def _optimize(self, mu: np.ndarray, cov: np.ndarray, constraints: Constraints) -> OptimizerResult:
        n = mu.size
        w_mkt = self._market_weights(n)
        pi = implied_equilibrium_returns(cov, w_mkt, self.risk_aversion)

        if self.views is None:
            implied = pi
            raw = w_mkt
        else:
            implied = posterior_returns(pi, cov, self.views, self.tau)
            inv = np.linalg.pinv(self.risk_aversion * cov + np.eye(n) * _JITTER)
            raw = inv @ implied
            total = float(raw.sum())
            if abs(total) < 1e-12 or not np.isfinite(raw).all():
                logger.warning("Black-Litterman weights degenerate; using market weights")
                raw = w_mkt
            else:
                raw = raw / total

        weights = apply_constraints(raw, constraints)
        return self._result(
            weights,
            mu,
            cov,
            implied_returns=implied,
            diagnostics={"has_views": self.views is not None},
        )


_OPTIMIZERS: dict[OptimizationMethod, type[Optimizer]] = {
    OptimizationMethod.MEAN_VARIANCE: MeanVarianceOptimizer,
    OptimizationMethod.MAX_SHARPE: MaxSharpeOptimizer,
    OptimizationMethod.RISK_PARITY: RiskParityOptimizer,
    OptimizationMethod.MIN_VOLATILITY: MinVolatilityOptimizer,
    OptimizationMethod.CVAR_MIN: CvarOptimizer,
    OptimizationMethod.BLACK_LITTERMAN: BlackLittermanOptimizer,
}


def build_optimizer(method: str | OptimizationMethod, **params: Any) -> Optimizer:
    """Instantiate the optimiser variant registered for `method`."""

    return _OPTIMIZERS[OptimizationMethod.parse(method)](**params)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PortfolioOptimizationEngine:
    """Facade over the optimiser variants and the efficient frontier sweep."""

    def __init__(
        self,
        risk_free_rate: float | None = None,
        *,
        settings: Settings | None = None,
        estimation_engine: InputEstimationEngine | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.risk_free_rate = (
            self._settings.risk_free_rate if risk_free_rate is None else risk_free_rate
        )
        self._estimation = estimation_engine

    def portfolio_return(self, weights: np.ndarray, returns: np.ndarray) -> float:
        return portfolio_return(weights, returns)

    def portfolio_volatility(self, weights: np.ndarray, covariance: np.ndarray) -> float:
        return portfolio_volatility(weights, covariance)

    def sharpe_ratio(self, weights: np.ndarray, returns: np.ndarray, covariance: np.ndarray) -> float:
        return sharpe_ratio(weights, returns, covariance, self.risk_free_rate)

    def calculate_cvar(self, weights: np.ndarray, scenarios: np.ndarray, alpha: float = 0.05) -> float:
        return calculate_cvar(weights, scenarios, alpha)

    @staticmethod
    def apply_constraints(weights: np.ndarray, constraints: Constraints | None = None) -> np.ndarray:
        return apply_constraints(weights, constraints)

    def optimize(
        self,
        method: str | OptimizationMethod,
        returns: Sequence[float] | np.ndarray,
        covariance: Sequence[Sequence[float]] | np.ndarray,
        constraints: Constraints | None = None,
        **params: Any,
    ) -> OptimizerResult:
        parsed = OptimizationMethod.parse(method)
        params.setdefault("risk_free_rate", self.risk_free_rate)
        if parsed is OptimizationMethod.CVAR_MIN:
            params.setdefault("estimation_engine", self._estimation)
            params.setdefault("num_scenarios", self._settings.monte_carlo_scenarios)
        if parsed is OptimizationMethod.BLACK_LITTERMAN:
            params.setdefault("risk_aversion", self._settings.risk_aversion)
            params.setdefault("tau", self._settings.black_litterman_tau)
        optimizer = build_optimizer(parsed, **params)
        return optimizer.optimize(returns, covariance, constraints)

    def target_return_for_risk_tolerance(
        self,
        returns: Sequence[float] | np.ndarray,
        covariance: Sequence[Sequence[float]] | np.ndarray,
        risk_tolerance: float,
    ) -> float:
        """Map 0-100 risk tolerance onto the achievable long-only return range.

        Targets below the global minimum-variance return sit on the
        inefficient half of the frontier and are raised to it.
        """

        mu, cov = validate_inputs(returns, covariance)
        lo, hi = float(mu.min()), float(mu.max())
        target = lo + (hi - lo) * min(max(risk_tolerance, 0.0), 100.0) / 100.0
        gmv_return = portfolio_return(minimum_variance_weights(cov, long_only=True), mu)
        return min(max(target, gmv_return), hi)

    def generate_efficient_frontier(
        self,
        returns: Sequence[float] | np.ndarray,
        covariance: Sequence[Sequence[float]] | np.ndarray,
        num_points: int | None = None,
    ) -> list[FrontierPoint]:
        """Sweep target returns from the minimum-variance return to max(μ).

        Each point is a long-only QP. Infeasible targets are skipped, so fewer
        than `num_points` points may come back.
        """

        if num_points is None:
            num_points = self._settings.default_frontier_points
        limit = self._settings.max_frontier_points
        if not 1 <= num_points <= limit:
            raise ComputationLimitError(f"num_points must lie in [1, {limit}], got {num_points}")

        mu, cov = validate_inputs(returns, covariance)
        if mu.size == 0:
            return []
        lo, hi = float(mu.min()), float(mu.max())
        gmv = minimum_variance_weights(cov, long_only=True)
        start = min(max(portfolio_return(gmv, mu), lo), hi)

        points: list[FrontierPoint] = []
        for target in np.linspace(start, hi, num_points):
            try:
                weights = _solve_min_variance(mu, cov, long_only=True, target=float(target))
            except OptimizationInfeasibleError as exc:
                logger.debug("Skipping frontier point %.6f: %s", target, exc)
                continue
            risk = portfolio_volatility(weights, cov)
            # Solver noise near the minimum-variance point can undercut the
            # previous point; such points are dominated.
            if points and risk < points[-1].risk:
                continue
            points.append(
                FrontierPoint(
                    risk=risk,
                    expected_return=portfolio_return(weights, mu),
                    weights=[float(x) for x in weights],
                )
            )
        return points
