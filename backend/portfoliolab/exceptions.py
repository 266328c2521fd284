from __future__ import annotations


class OptimizationError(RuntimeError):
    """Base class for estimation and optimisation failures."""


class UnknownMethodError(OptimizationError, ValueError):
    """Raised when a return, covariance or optimiser method is not registered."""

    def __init__(self, kind: str, method: str) -> None:
        self.kind = kind
        self.method = method
        super().__init__(f"Unknown {kind} method: {method}")


class InsufficientDataError(OptimizationError):
    """Raised when a symbol has fewer usable prices than an estimator needs.

    Estimators catch this per symbol and substitute a default, so it only
    escapes when no symbol in the universe has usable history.
    """

    def __init__(self, symbol: str | None, available: int, required: int = 2) -> None:
        self.symbol = symbol
        self.available = available
        self.required = required
        subject = symbol or "universe"
        super().__init__(
            f"Insufficient price history for {subject}: "
            f"{available} usable points, {required} required"
        )


class DimensionMismatchError(OptimizationError):
    """Raised when return vector and covariance matrix shapes disagree."""


class OptimizationInfeasibleError(OptimizationError):
    """Raised when a target return or constraint set cannot be satisfied."""


class ComputationLimitError(OptimizationError, ValueError):
    """Raised when a caller-controlled loop bound exceeds configured limits."""


class NoHoldingsError(LookupError):
    """Raised when the portfolio owner has no holdings to optimise."""


class OptimizationNotFoundError(LookupError):
    """Raised when an optimisation result does not exist for the caller."""


class ProviderUnavailableError(RuntimeError):
    """Raised when a requested market data provider cannot be used."""
