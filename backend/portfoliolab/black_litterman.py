"""Black-Litterman equilibrium and posterior return calculations.

Shared by the return estimators (``black_litterman`` return method) and the
``black-litterman`` optimiser so both produce identical expected returns.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from .exceptions import DimensionMismatchError


@dataclass
class BlackLittermanViews:
    """Investor views in pick-matrix form.

    Attributes:
        pick_matrix: P, shape (k, n); row i selects the assets in view i.
        view_returns: Q, shape (k,); expected (annualised) return of each view.
        omega: Optional Ω, shape (k, k); view uncertainty. Defaults to
            diag(P · τΣ · Pᵗ) when omitted.
    """

    pick_matrix: np.ndarray
    view_returns: np.ndarray
    omega: np.ndarray | None = None

    @classmethod
    def from_symbol_views(
        cls,
        symbols: Sequence[str],
        views: Sequence[Mapping[str, object]],
    ) -> "BlackLittermanViews | None":
        """Build P/Q/Ω from symbol-keyed views.

        Each view is a mapping with ``weights`` ({symbol: weight}),
        ``expected_return`` and an optional ``variance``. Views that touch no
        known symbol are dropped.
        """

        index = {sym: i for i, sym in enumerate(symbols)}
        rows: list[np.ndarray] = []
        q: list[float] = []
        variances: list[float | None] = []
        for view in views:
            weights = view.get("weights") or {}
            row = np.zeros(len(symbols), dtype=float)
            for sym, weight in dict(weights).items():  # type: ignore[arg-type]
                if sym in index:
                    row[index[sym]] = float(weight)
            if not np.any(row):
                continue
            rows.append(row)
            q.append(float(view.get("expected_return", 0.0)))  # type: ignore[arg-type]
            variance = view.get("variance")
            variances.append(float(variance) if variance is not None else None)  # type: ignore[arg-type]

        if not rows:
            return None

        omega = None
        if all(v is not None for v in variances):
            omega = np.diag([float(v) for v in variances])  # type: ignore[arg-type]
        return cls(
            pick_matrix=np.vstack(rows),
            view_returns=np.asarray(q, dtype=float),
            omega=omega,
        )


def implied_equilibrium_returns(
    covariance: np.ndarray,
    market_weights: np.ndarray,
    risk_aversion: float = 3.0,
) -> np.ndarray:
    """Reverse-optimised returns Π = δ · Σ · w_market."""

    cov = np.asarray(covariance, dtype=float)
    w = np.asarray(market_weights, dtype=float)
    if cov.shape != (w.size, w.size):
        raise DimensionMismatchError(
            f"Covariance shape {cov.shape} does not match {w.size} market weights"
        )
    return risk_aversion * cov @ w


def posterior_returns(
    equilibrium: np.ndarray,
    covariance: np.ndarray,
    views: BlackLittermanViews | None,
    tau: float = 0.025,
) -> np.ndarray:
    """Blend equilibrium returns with views.

    μ_BL = [(τΣ)⁻¹ + PᵗΩ⁻¹P]⁻¹ [(τΣ)⁻¹Π + PᵗΩ⁻¹Q]

    Without views the equilibrium vector is returned unchanged.
    """

    pi = np.asarray(equilibrium, dtype=float)
    if views is None:
        return pi.copy()

    cov = np.asarray(covariance, dtype=float)
    p = np.atleast_2d(np.asarray(views.pick_matrix, dtype=float))
    q = np.asarray(views.view_returns, dtype=float)
    n = pi.size
    if cov.shape != (n, n) or p.shape[1] != n or p.shape[0] != q.size:
        raise DimensionMismatchError(
            f"Views P{p.shape}/Q{q.shape} incompatible with {n} assets"
        )

    tau_cov = tau * cov
    omega = views.omega
    if omega is None:
        omega = np.diag(np.diag(p @ tau_cov @ p.T))
    omega = np.asarray(omega, dtype=float)
    # Zero-variance views would make Ω singular; treat them as near-certain.
    omega = omega + np.eye(omega.shape[0]) * 1e-12

    tau_cov_inv = np.linalg.pinv(tau_cov)
    omega_inv = np.linalg.inv(omega)
    precision = tau_cov_inv + p.T @ omega_inv @ p
    rhs = tau_cov_inv @ pi + p.T @ omega_inv @ q
    return np.linalg.solve(precision, rhs)
