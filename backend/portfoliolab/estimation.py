"""Input estimation for portfolio optimisation.

Turns per-symbol daily price histories into the two inputs every optimiser
needs: an annualised expected-return vector and an annualised covariance
matrix. Each quantity has several estimators selected by enum; all of them
read at most `lookback` of the most recent valid closes per symbol.

Insufficient history is never fatal here. A symbol with fewer than two usable
prices gets an expected return of 0.0, and a symbol with fewer than two daily
returns gets a variance of 0.01 with zero covariances, so one illiquid name
cannot abort estimation for the rest of the universe.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Mapping, Sequence

import numpy as np

from .black_litterman import (
    BlackLittermanViews,
    implied_equilibrium_returns,
    posterior_returns,
)
from .config import Settings, get_settings
from .exceptions import (
    ComputationLimitError,
    DimensionMismatchError,
    InsufficientDataError,
    UnknownMethodError,
)
from .stats import (
    TRADING_DAYS_PER_YEAR,
    cholesky_decomposition,
    log_returns,
    sample_covariance,
    sample_variance,
    standard_normals,
    tail_align,
    valid_closes,
)

logger = logging.getLogger(__name__)

DEFAULT_VARIANCE = 0.01

PriceHistories = Mapping[str, Sequence[Any]]


class ReturnMethod(str, Enum):
    HISTORICAL_MEAN = "historical_mean"
    EXPONENTIAL_WEIGHTED = "exponential_weighted"
    CAPM = "capm"
    BLACK_LITTERMAN = "black_litterman"

    @classmethod
    def parse(cls, value: "str | ReturnMethod") -> "ReturnMethod":
        try:
            return cls(value)
        except ValueError:
            raise UnknownMethodError("return estimation", str(value)) from None


class CovarianceMethod(str, Enum):
    SAMPLE = "sample"
    SHRINKAGE = "shrinkage"
    FACTOR_MODEL = "factor_model"

    @classmethod
    def parse(cls, value: "str | CovarianceMethod") -> "CovarianceMethod":
        try:
            return cls(value)
        except ValueError:
            raise UnknownMethodError("covariance estimation", str(value)) from None


@dataclass
class CovarianceEstimate:
    """Annualised covariance matrix with its symbol ordering."""

    symbols: list[str]
    matrix: np.ndarray
    method: str = CovarianceMethod.SAMPLE.value
    shrinkage_intensity: float | None = None

    def __post_init__(self) -> None:
        n = len(self.symbols)
        if self.matrix.shape != (n, n):
            raise DimensionMismatchError(
                f"Covariance matrix shape {self.matrix.shape} does not match "
                f"{n} symbols"
            )


def _close_of(item: Any) -> float | None:
    if item is None:
        return None
    if isinstance(item, (int, float)):
        return float(item)
    if isinstance(item, Mapping):
        value = item.get("close")
    else:
        value = getattr(item, "close", None)
    return float(value) if value is not None else None


def usable_closes(series: Sequence[Any], lookback: int) -> list[float]:
    """Return the last `lookback` valid closes of a price series."""

    closes = valid_closes(_close_of(item) for item in series or [])
    if lookback > 0:
        closes = closes[-lookback:]
    return closes


def symbol_log_returns(symbol: str, series: Sequence[Any], lookback: int) -> np.ndarray:
    """Daily log-returns over the lookback window for one symbol.

    Raises InsufficientDataError when fewer than two usable closes remain.
    """

    closes = usable_closes(series, lookback)
    if len(closes) < 2:
        raise InsufficientDataError(symbol, len(closes))
    return log_returns(closes)


def insufficient_symbols(price_histories: PriceHistories, lookback: int) -> list[str]:
    """Symbols that will be degraded to default estimates."""

    return [
        symbol
        for symbol, series in price_histories.items()
        if len(usable_closes(series, lookback)) < 2
    ]


# ---------------------------------------------------------------------------
# Expected return estimators
# ---------------------------------------------------------------------------


class ReturnEstimator:
    """Common contract: price histories → {symbol: annualised return}."""

    method: ReturnMethod

    def estimate(self, price_histories: PriceHistories, *, lookback: int) -> dict[str, float]:
        raise NotImplementedError


class HistoricalMeanReturns(ReturnEstimator):
    method = ReturnMethod.HISTORICAL_MEAN

    def estimate(self, price_histories: PriceHistories, *, lookback: int) -> dict[str, float]:
        returns: dict[str, float] = {}
        for symbol, series in price_histories.items():
            try:
                rets = symbol_log_returns(symbol, series, lookback)
            except InsufficientDataError as exc:
                logger.debug("Defaulting expected return to 0: %s", exc)
                returns[symbol] = 0.0
                continue
            returns[symbol] = float(rets.mean()) * TRADING_DAYS_PER_YEAR
        return returns


class ExponentialWeightedReturns(ReturnEstimator):
    """Exponentially weighted mean; the most recent return has weight 1."""

    method = ReturnMethod.EXPONENTIAL_WEIGHTED

    def __init__(self, decay: float = 0.94) -> None:
        if not 0.0 < decay <= 1.0:
            raise ValueError(f"decay must lie in (0, 1], got {decay}")
        self.decay = decay

    def estimate(self, price_histories: PriceHistories, *, lookback: int) -> dict[str, float]:
        returns: dict[str, float] = {}
        for symbol, series in price_histories.items():
            try:
                rets = symbol_log_returns(symbol, series, lookback)
            except InsufficientDataError as exc:
                logger.debug("Defaulting expected return to 0: %s", exc)
                returns[symbol] = 0.0
                continue
            m = rets.size
            weights = self.decay ** np.arange(m - 1, -1, -1, dtype=float)
            returns[symbol] = float(weights @ rets / weights.sum()) * TRADING_DAYS_PER_YEAR
        return returns


class CapmReturns(ReturnEstimator):
    """E[R] = Rf + β (E[Rm] − Rf), with β estimated against a market proxy."""

    method = ReturnMethod.CAPM

    def __init__(
        self,
        *,
        risk_free_rate: float = 0.02,
        market_return: float = 0.08,
        market_symbol: str = "SPY",
        market_history: Sequence[Any] | None = None,
    ) -> None:
        self.risk_free_rate = risk_free_rate
        self.market_return = market_return
        self.market_symbol = market_symbol
        self.market_history = market_history

    def betas(self, price_histories: PriceHistories, *, lookback: int) -> dict[str, float]:
        """Beta per symbol; 1.0 wherever asset or market data is insufficient."""

        market_series = self.market_history
        if market_series is None:
            market_series = price_histories.get(self.market_symbol)

        try:
            market_rets = symbol_log_returns(self.market_symbol, market_series or [], lookback)
        except InsufficientDataError as exc:
            logger.warning("CAPM betas default to 1.0: %s", exc)
            return {symbol: 1.0 for symbol in price_histories}

        betas: dict[str, float] = {}
        for symbol, series in price_histories.items():
            try:
                asset_rets = symbol_log_returns(symbol, series, lookback)
            except InsufficientDataError:
                betas[symbol] = 1.0
                continue
            a, m = tail_align(asset_rets, market_rets)
            market_var = sample_variance(m)
            betas[symbol] = sample_covariance(a, m) / market_var if market_var > 0 else 1.0
        return betas

    def estimate(self, price_histories: PriceHistories, *, lookback: int) -> dict[str, float]:
        premium = self.market_return - self.risk_free_rate
        return {
            symbol: self.risk_free_rate + beta * premium
            for symbol, beta in self.betas(price_histories, lookback=lookback).items()
        }


class BlackLittermanReturns(ReturnEstimator):
    """Equilibrium returns implied by market weights, blended with any views.

    Π comes from `covariance` when supplied, else from the sample
    covariance of the same histories.
    """

    method = ReturnMethod.BLACK_LITTERMAN

    def __init__(
        self,
        *,
        risk_aversion: float = 3.0,
        tau: float = 0.025,
        market_weights: Mapping[str, float] | None = None,
        views: Sequence[Mapping[str, object]] | None = None,
        covariance: CovarianceEstimate | None = None,
    ) -> None:
        self.risk_aversion = risk_aversion
        self.tau = tau
        self.market_weights = market_weights
        self.views = views
        self.covariance = covariance

    def estimate(self, price_histories: PriceHistories, *, lookback: int) -> dict[str, float]:
        cov = self.covariance
        if cov is None or set(cov.symbols) != set(price_histories):
            cov = SampleCovariance().estimate(price_histories, lookback=lookback)
        symbols = cov.symbols
        if not symbols:
            return {}
        w = market_weight_vector(symbols, self.market_weights)
        pi = implied_equilibrium_returns(cov.matrix, w, self.risk_aversion)
        views = (
            BlackLittermanViews.from_symbol_views(symbols, self.views)
            if self.views
            else None
        )
        mu = posterior_returns(pi, cov.matrix, views, self.tau)
        return {sym: float(value) for sym, value in zip(symbols, mu)}


def market_weight_vector(
    symbols: Sequence[str], market_weights: Mapping[str, float] | None
) -> np.ndarray:
    """Normalised market weights in symbol order; equal weights by default."""

    n = len(symbols)
    if n == 0:
        return np.array([], dtype=float)
    if market_weights:
        w = np.array([max(float(market_weights.get(s, 0.0)), 0.0) for s in symbols])
        total = float(w.sum())
        if total > 0.0:
            return w / total
    return np.full(n, 1.0 / n)


# ---------------------------------------------------------------------------
# Covariance estimators
# ---------------------------------------------------------------------------


class CovarianceEstimator:
    """Common contract: price histories → CovarianceEstimate."""

    method: CovarianceMethod

    def estimate(self, price_histories: PriceHistories, *, lookback: int) -> CovarianceEstimate:
        raise NotImplementedError


def _usable_return_series(
    price_histories: PriceHistories, lookback: int
) -> dict[str, np.ndarray | None]:
    series_by_symbol: dict[str, np.ndarray | None] = {}
    for symbol, series in price_histories.items():
        try:
            rets = symbol_log_returns(symbol, series, lookback)
        except InsufficientDataError:
            rets = None
        # A variance needs at least two observations.
        series_by_symbol[symbol] = rets if rets is not None and rets.size >= 2 else None
    return series_by_symbol


class SampleCovariance(CovarianceEstimator):
    """Pairwise, tail-aligned, annualised sample covariance of log-returns."""

    method = CovarianceMethod.SAMPLE

    def estimate(self, price_histories: PriceHistories, *, lookback: int) -> CovarianceEstimate:
        return self.from_returns(_usable_return_series(price_histories, lookback))

    def from_returns(self, returns_by_symbol: Mapping[str, np.ndarray | None]) -> CovarianceEstimate:
        symbols = list(returns_by_symbol)
        n = len(symbols)
        cov = np.zeros((n, n), dtype=float)
        for i, si in enumerate(symbols):
            ri = returns_by_symbol[si]
            if ri is None:
                logger.debug("Defaulting variance of %s to %.2f", si, DEFAULT_VARIANCE)
                cov[i, i] = DEFAULT_VARIANCE
                continue
            cov[i, i] = sample_variance(ri) * TRADING_DAYS_PER_YEAR
            for j in range(i + 1, n):
                rj = returns_by_symbol[symbols[j]]
                if rj is None:
                    continue
                a, b = tail_align(ri, rj)
                cov_ij = sample_covariance(a, b) * TRADING_DAYS_PER_YEAR
                cov[i, j] = cov_ij
                cov[j, i] = cov_ij
        return CovarianceEstimate(symbols=symbols, matrix=cov, method=self.method.value)


def constant_correlation_target(matrix: np.ndarray) -> np.ndarray:
    """Average variance on the diagonal, average covariance elsewhere."""

    n = matrix.shape[0]
    if n == 0:
        return matrix.copy()
    avg_var = float(np.trace(matrix)) / n
    off_diag_count = n * n - n
    avg_cov = (
        (float(matrix.sum()) - float(np.trace(matrix))) / off_diag_count
        if off_diag_count > 0
        else 0.0
    )
    target = np.full((n, n), avg_cov, dtype=float)
    np.fill_diagonal(target, avg_var)
    return target


def estimate_shrinkage_intensity(returns_by_symbol: Mapping[str, np.ndarray | None]) -> float:
    """Data-driven shrinkage intensity toward the constant-correlation target.

    Follows the Ledoit-Wolf construction delta = pi_hat / (T * gamma_hat),
    clipped to [0, 1], where pi_hat estimates the sampling noise of the sample
    covariance and gamma_hat is its squared distance to the target. The
    rho_hat correction term is omitted, which biases delta upward slightly.
    """

    usable = [r for r in returns_by_symbol.values() if r is not None]
    if len(usable) < 2:
        return 0.0
    t = min(r.size for r in usable)
    if t < 2:
        return 0.0

    x = np.column_stack([r[-t:] for r in usable])
    x = x - x.mean(axis=0)
    s = x.T @ x / (t - 1)
    target = constant_correlation_target(s)

    gamma_hat = float(np.sum((s - target) ** 2))
    if gamma_hat <= 0.0:
        return 0.0

    pi_hat = 0.0
    for row in x:
        pi_hat += float(np.sum((np.outer(row, row) - s) ** 2))
    pi_hat /= t

    return float(min(max(pi_hat / (t * gamma_hat), 0.0), 1.0))


class ShrinkageCovariance(CovarianceEstimator):
    """(1 − δ) · Sample + δ · constant-correlation target.

    `intensity` defaults to 0.1. Pass "auto" to estimate δ from the data.
    """

    method = CovarianceMethod.SHRINKAGE

    def __init__(self, intensity: float | str = 0.1) -> None:
        if isinstance(intensity, str):
            if intensity != "auto":
                raise ValueError(f"Unsupported shrinkage intensity: {intensity}")
        elif not 0.0 <= float(intensity) <= 1.0:
            raise ValueError(f"Shrinkage intensity must lie in [0, 1], got {intensity}")
        self.intensity = intensity

    def estimate(self, price_histories: PriceHistories, *, lookback: int) -> CovarianceEstimate:
        returns_by_symbol = _usable_return_series(price_histories, lookback)
        sample = SampleCovariance().from_returns(returns_by_symbol)

        if self.intensity == "auto":
            delta = estimate_shrinkage_intensity(returns_by_symbol)
        else:
            delta = float(self.intensity)

        if delta == 0.0:
            shrunk = sample.matrix.copy()
        else:
            target = constant_correlation_target(sample.matrix)
            shrunk = (1.0 - delta) * sample.matrix + delta * target
        return CovarianceEstimate(
            symbols=sample.symbols,
            matrix=shrunk,
            method=self.method.value,
            shrinkage_intensity=delta,
        )


class FactorModelCovariance(CovarianceEstimator):
    """Statistical factor model Σ = B·F·Bᵗ + D from principal components.

    The leading `num_factors` eigenvectors of the sample covariance play the
    role of market/size/value factors; the residual diagonal D keeps each
    asset's sample variance on the diagonal.
    """

    method = CovarianceMethod.FACTOR_MODEL

    def __init__(self, num_factors: int = 3) -> None:
        if num_factors < 1:
            raise ValueError("num_factors must be at least 1")
        self.num_factors = num_factors

    def estimate(self, price_histories: PriceHistories, *, lookback: int) -> CovarianceEstimate:
        sample = SampleCovariance().estimate(price_histories, lookback=lookback)
        n = len(sample.symbols)
        if n <= self.num_factors:
            return CovarianceEstimate(
                symbols=sample.symbols, matrix=sample.matrix, method=self.method.value
            )

        eigvals, eigvecs = np.linalg.eigh(sample.matrix)
        order = np.argsort(eigvals)[::-1][: self.num_factors]
        loadings = eigvecs[:, order]
        factor_var = np.clip(eigvals[order], 0.0, None)

        systematic = loadings @ np.diag(factor_var) @ loadings.T
        specific = np.clip(np.diag(sample.matrix) - np.diag(systematic), 0.0, None)
        matrix = systematic + np.diag(specific)
        matrix = (matrix + matrix.T) / 2.0
        return CovarianceEstimate(symbols=sample.symbols, matrix=matrix, method=self.method.value)


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------


@dataclass
class EstimationConfig:
    """Named combination of return and covariance estimation settings."""

    returns_method: str = ReturnMethod.HISTORICAL_MEAN.value
    covariance_method: str = CovarianceMethod.SHRINKAGE.value
    lookback: int | None = None
    returns_options: dict[str, Any] = field(default_factory=dict)
    covariance_options: dict[str, Any] = field(default_factory=dict)


_PRESETS: dict[str, EstimationConfig] = {
    "conservative": EstimationConfig(
        returns_method="historical_mean",
        covariance_method="shrinkage",
        lookback=504,
        covariance_options={"shrinkage_intensity": 0.2},
    ),
    "moderate": EstimationConfig(
        returns_method="exponential_weighted",
        covariance_method="shrinkage",
        returns_options={"decay": 0.94},
        covariance_options={"shrinkage_intensity": 0.1},
    ),
    "aggressive": EstimationConfig(
        returns_method="exponential_weighted",
        covariance_method="sample",
        lookback=252,
        returns_options={"decay": 0.98},
    ),
    "capm_based": EstimationConfig(
        returns_method="capm",
        covariance_method="factor_model",
        returns_options={"risk_free_rate": 0.02, "market_return": 0.08},
    ),
}


def estimation_preset(name: str | None) -> EstimationConfig:
    """Return a copy of a named preset; unknown names resolve to 'moderate'."""

    preset = _PRESETS.get(name or "", _PRESETS["moderate"])
    return EstimationConfig(
        returns_method=preset.returns_method,
        covariance_method=preset.covariance_method,
        lookback=preset.lookback,
        returns_options=dict(preset.returns_options),
        covariance_options=dict(preset.covariance_options),
    )


def preset_names() -> list[str]:
    return list(_PRESETS)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class InputEstimationEngine:
    """Facade selecting estimators by method name and generating scenarios."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        rng: np.random.Generator | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._rng = rng if rng is not None else np.random.default_rng()

    @property
    def default_lookback(self) -> int:
        return self._settings.default_lookback_days

    def return_estimator(self, method: str | ReturnMethod, **options: Any) -> ReturnEstimator:
        parsed = ReturnMethod.parse(method)
        s = self._settings
        if parsed is ReturnMethod.HISTORICAL_MEAN:
            return HistoricalMeanReturns()
        if parsed is ReturnMethod.EXPONENTIAL_WEIGHTED:
            return ExponentialWeightedReturns(
                decay=options.get("decay", options.get("lambda", s.ewma_lambda))
            )
        if parsed is ReturnMethod.CAPM:
            return CapmReturns(
                risk_free_rate=options.get("risk_free_rate", s.risk_free_rate),
                market_return=options.get("market_return", s.market_return),
                market_symbol=options.get("market_symbol", s.market_proxy_symbol),
                market_history=options.get("market_history"),
            )
        return BlackLittermanReturns(
            risk_aversion=options.get("risk_aversion", s.risk_aversion),
            tau=options.get("tau", s.black_litterman_tau),
            market_weights=options.get("market_weights"),
            views=options.get("views"),
            covariance=options.get("covariance"),
        )

    def covariance_estimator(
        self, method: str | CovarianceMethod, **options: Any
    ) -> CovarianceEstimator:
        parsed = CovarianceMethod.parse(method)
        if parsed is CovarianceMethod.SAMPLE:
            return SampleCovariance()
        if parsed is CovarianceMethod.SHRINKAGE:
            intensity = options.get("shrinkage_intensity")
            if intensity is None:
                intensity = self._settings.shrinkage_intensity
            return ShrinkageCovariance(intensity=intensity)
        return FactorModelCovariance(num_factors=options.get("num_factors", 3))

    def estimate_expected_returns(
        self,
        price_histories: PriceHistories,
        method: str | ReturnMethod = ReturnMethod.HISTORICAL_MEAN,
        *,
        lookback: int | None = None,
        **options: Any,
    ) -> dict[str, float]:
        estimator = self.return_estimator(method, **options)
        return estimator.estimate(price_histories, lookback=lookback or self.default_lookback)

    def estimate_covariance_matrix(
        self,
        price_histories: PriceHistories,
        method: str | CovarianceMethod = CovarianceMethod.SAMPLE,
        *,
        lookback: int | None = None,
        **options: Any,
    ) -> CovarianceEstimate:
        estimator = self.covariance_estimator(method, **options)
        return estimator.estimate(price_histories, lookback=lookback or self.default_lookback)

    def _scenario_inputs(
        self,
        returns: Mapping[str, float] | Sequence[float] | np.ndarray,
        covariance: CovarianceEstimate | np.ndarray,
        num_scenarios: int,
    ) -> tuple[np.ndarray, np.ndarray]:
        if not 1 <= num_scenarios <= self._settings.max_scenarios:
            raise ComputationLimitError(
                f"num_scenarios must lie in [1, {self._settings.max_scenarios}], "
                f"got {num_scenarios}"
            )

        if isinstance(covariance, CovarianceEstimate):
            matrix = covariance.matrix
            if isinstance(returns, Mapping):
                mu = np.array([float(returns.get(s, 0.0)) for s in covariance.symbols])
            else:
                mu = np.asarray(returns, dtype=float)
        else:
            matrix = np.asarray(covariance, dtype=float)
            if isinstance(returns, Mapping):
                mu = np.array([float(v) for v in returns.values()])
            else:
                mu = np.asarray(returns, dtype=float)

        if matrix.shape != (mu.size, mu.size):
            raise DimensionMismatchError(
                f"Return vector of size {mu.size} does not match covariance {matrix.shape}"
            )
        return mu, cholesky_decomposition(matrix)

    def generate_monte_carlo_scenarios(
        self,
        returns: Mapping[str, float] | Sequence[float] | np.ndarray,
        covariance: CovarianceEstimate | np.ndarray,
        num_scenarios: int = 1000,
        horizon: float = 1.0,
    ) -> np.ndarray:
        """Correlated return scenarios, shape (num_scenarios, n_assets)."""

        mu, lower = self._scenario_inputs(returns, covariance, num_scenarios)
        z = standard_normals(self._rng, (num_scenarios, mu.size))
        return mu * horizon + (z @ lower.T) * math.sqrt(horizon)

    def iter_monte_carlo_scenarios(
        self,
        returns: Mapping[str, float] | Sequence[float] | np.ndarray,
        covariance: CovarianceEstimate | np.ndarray,
        num_scenarios: int = 1000,
        horizon: float = 1.0,
    ) -> Iterator[np.ndarray]:
        """Lazily yield scenario vectors one at a time."""

        mu, lower = self._scenario_inputs(returns, covariance, num_scenarios)
        scale = math.sqrt(horizon)
        for _ in range(num_scenarios):
            z = standard_normals(self._rng, mu.size)
            yield mu * horizon + (lower @ z) * scale
