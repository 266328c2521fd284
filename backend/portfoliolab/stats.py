from __future__ import annotations

import math
from typing import Iterable, Sequence

import numpy as np

from .exceptions import DimensionMismatchError

TRADING_DAYS_PER_YEAR = 252


def valid_closes(closes: Iterable[float | None]) -> list[float]:
    """Drop missing and non-positive closes, preserving order."""

    result: list[float] = []
    for value in closes:
        if value is None:
            continue
        price = float(value)
        if not math.isfinite(price) or price <= 0.0:
            continue
        result.append(price)
    return result


def log_returns(closes: Sequence[float]) -> np.ndarray:
    """Compute daily log-returns ln(P_t / P_{t-1}) from a close series.

    Non-positive closes are treated as missing and skipped before the
    differences are taken.
    """

    prices = np.asarray(valid_closes(closes), dtype=float)
    if prices.size < 2:
        return np.array([], dtype=float)
    return np.diff(np.log(prices))


def sample_variance(series: Sequence[float] | np.ndarray) -> float:
    """Unbiased sample variance; 0.0 for fewer than two observations."""

    x = np.asarray(series, dtype=float)
    if x.size < 2:
        return 0.0
    return float(np.var(x, ddof=1))


def sample_covariance(
    series_a: Sequence[float] | np.ndarray,
    series_b: Sequence[float] | np.ndarray,
) -> float:
    """Unbiased sample covariance of two equal-length series."""

    a = np.asarray(series_a, dtype=float)
    b = np.asarray(series_b, dtype=float)
    if a.size != b.size:
        raise DimensionMismatchError(
            f"Series lengths differ: {a.size} vs {b.size}"
        )
    if a.size < 2:
        return 0.0
    return float(np.sum((a - a.mean()) * (b - b.mean())) / (a.size - 1))


def tail_align(
    series_a: np.ndarray, series_b: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """Trim two return series to their common most-recent window."""

    length = min(series_a.size, series_b.size)
    if length == 0:
        return series_a[:0], series_b[:0]
    return series_a[-length:], series_b[-length:]


def cholesky_decomposition(matrix: Sequence[Sequence[float]] | np.ndarray) -> np.ndarray:
    """Lower-triangular L with L @ L.T == matrix.

    Negative pivots are clamped to zero and columns with a zero pivot are
    zeroed, so positive semi-definite (singular) covariance matrices still
    decompose instead of raising like `numpy.linalg.cholesky`.
    """

    a = np.asarray(matrix, dtype=float)
    if a.ndim != 2 or a.shape[0] != a.shape[1]:
        raise DimensionMismatchError(f"Cholesky requires a square matrix, got {a.shape}")

    n = a.shape[0]
    lower = np.zeros((n, n), dtype=float)
    for i in range(n):
        for j in range(i + 1):
            partial = float(lower[i, :j] @ lower[j, :j])
            if i == j:
                lower[i, j] = math.sqrt(max(0.0, a[i, i] - partial))
            elif lower[j, j] > 0.0:
                lower[i, j] = (a[i, j] - partial) / lower[j, j]
    return lower


def standard_normals(rng: np.random.Generator, size: int | tuple[int, ...]) -> np.ndarray:
    """Draw standard normal variates via the Box-Muller transform."""

    # 1 - U maps [0, 1) onto (0, 1] so the logarithm is always finite.
    u1 = 1.0 - rng.random(size)
    u2 = rng.random(size)
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * math.pi * u2)

