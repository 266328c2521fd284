from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field
from pydantic_settings import SettingsConfigDict


# -------------------------
# Holdings schemas
# -------------------------


class HoldingBase(BaseModel):
    """Common fields for holding lots."""

    symbol: str = Field(..., description="Ticker symbol, e.g. AAPL")
    company_name: str | None = None
    quantity: float = Field(..., gt=0, description="Number of units held (> 0)")
    average_cost: float = Field(
        ...,
        ge=0,
        description="Average purchase price per unit in portfolio currency.",
    )
    category: str | None = Field(
        default=None,
        description="Sector or asset-class bucket used for allocation reports.",
    )
    last_price: float | None = Field(
        default=None,
        gt=0,
        description="Optional last known market price per unit.",
    )
    notes: str | None = None


class HoldingCreate(HoldingBase):
    """Payload to record a new holding lot."""

    user_id: str = Field(..., description="Owner of the holding")


class HoldingUpdate(BaseModel):
    """Partial update payload for a holding lot."""

    company_name: str | None = None
    quantity: float | None = Field(default=None, gt=0)
    average_cost: float | None = Field(default=None, ge=0)
    category: str | None = None
    last_price: float | None = Field(default=None, gt=0)
    notes: str | None = None


class HoldingRead(HoldingBase):
    """Holding representation returned by the API."""

    id: int
    user_id: str
    created_at: datetime
    updated_at: datetime

    model_config = SettingsConfigDict(from_attributes=True)


# -------------------------
# Optimisation request schemas
# -------------------------


class ConstraintsConfig(BaseModel):
    """Position constraints applied to optimised weights."""

    allow_short_selling: bool = Field(
        False,
        description="Permit negative weights. When false, weights are long-only.",
    )
    min_position_size_pct: float = Field(
        1.0,
        ge=0,
        le=100,
        description=(
            "Minimum weight per held symbol in percent. Only enforced for "
            "long-only portfolios."
        ),
    )


class EstimationConfig(BaseModel):
    """Input estimation choices. Unset fields fall back to the preset."""

    returns: str | None = Field(
        default=None,
        description=(
            "Expected return method: historical_mean, exponential_weighted, "
            "capm or black_litterman."
        ),
    )
    covariance: str | None = Field(
        default=None,
        description="Covariance method: sample, shrinkage or factor_model.",
    )
    lookback_days: int | None = Field(
        default=None,
        ge=2,
        le=5040,
        description="Number of most recent daily closes to use (default 504).",
    )
    shrinkage_intensity: Annotated[float, Field(ge=0, le=1)] | Literal["auto"] | None = Field(
        default=None,
        description="Shrinkage intensity in [0, 1], or 'auto' to estimate it.",
    )
    preset: str | None = Field(
        default=None,
        description="conservative, moderate, aggressive or capm_based.",
    )


class ViewInput(BaseModel):
    """One Black-Litterman view: a row of P, its Q entry and Ω diagonal."""

    weights: dict[str, float] = Field(
        ...,
        description=(
            "Symbol weights of the view portfolio, e.g. {'AAPL': 1} for an "
            "absolute view or {'AAPL': 1, 'MSFT': -1} for a relative one."
        ),
    )
    expected_return: float = Field(
        ...,
        description="Annualised return the view portfolio is expected to earn.",
    )
    variance: float | None = Field(
        default=None,
        ge=0,
        description="View uncertainty; defaults to the prior variance of the view.",
    )


class OptimizeRequest(BaseModel):
    """Request payload for optimising a user's holdings."""

    user_id: str
    method: str = Field(
        "mean-variance",
        description=(
            "mean-variance, max-sharpe, risk-parity, min-volatility, cvar-min "
            "or black-litterman."
        ),
    )
    risk_tolerance: float = Field(50.0, ge=0, le=100)
    max_position_size_pct: float = Field(30.0, ge=1, le=100)
    constraints: ConstraintsConfig = Field(default_factory=ConstraintsConfig)
    estimation: EstimationConfig = Field(default_factory=EstimationConfig)
    views: list[ViewInput] | None = None
    market_caps: dict[str, float] | None = Field(
        default=None,
        description="Market capitalisation per symbol for Black-Litterman priors.",
    )
    frontier_points: int | None = Field(
        default=None,
        ge=1,
        description="Request an efficient frontier with this many points.",
    )
    seed: int | None = Field(
        default=None,
        description="Seed for Monte Carlo scenarios, for reproducible CVaR runs.",
    )


# -------------------------
# Optimisation result schemas
# -------------------------


class AllocationItem(BaseModel):
    name: str
    value: float
    percentage: float


class OptimizedWeight(BaseModel):
    percentage: float
    change: float = Field(
        ...,
        description="Optimised percentage minus current percentage of the symbol.",
    )


class FrontierPointRead(BaseModel):
    risk: float
    expected_return: float = Field(..., alias="return")
    weights: list[float]

    model_config = SettingsConfigDict(populate_by_name=True)


class ImplementationStep(BaseModel):
    """Category-level rebalancing instruction."""

    sector: str
    action: Literal["BUY", "SELL"]
    change_percent: float
    amount: float
    current_value: float
    target_value: float
    priority: Literal["HIGH", "MEDIUM"]


class EstimationMethodsRead(BaseModel):
    returns: str
    covariance: str
    lookback_days: int
    preset: str | None = None
    shrinkage_intensity: float | None = None


class OptimizeResult(BaseModel):
    """Outcome of an optimisation run."""

    id: str
    user_id: str
    method: str
    requested_method: str
    risk_tolerance: float | None = None
    current_allocation: list[AllocationItem]
    optimized_allocation: dict[str, OptimizedWeight]
    expected_return: float | None = None
    expected_volatility: float | None = None
    sharpe_ratio: float | None = None
    cvar: float | None = None
    efficient_frontier: list[FrontierPointRead] | None = None
    implementation_plan: list[ImplementationStep]
    estimation_methods: EstimationMethodsRead
    is_fallback: bool = False
    diagnostics: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class OptimizationHistoryItem(BaseModel):
    id: str
    method: str
    requested_method: str | None = None
    risk_tolerance: float | None = None
    expected_return: float | None = None
    expected_volatility: float | None = None
    sharpe_ratio: float | None = None
    is_fallback: bool
    created_at: datetime

    model_config = SettingsConfigDict(from_attributes=True)


class TradeRecord(BaseModel):
    """Symbol-level trade produced when applying an optimisation."""

    symbol: str
    action: Literal["BUY", "SELL"]
    amount: float
    quantity: float | None = None
    price: float | None = None
    current_value: float
    target_value: float
    current_percentage: float
    target_percentage: float


class ApplyResponse(BaseModel):
    optimization_id: str
    trade_plan_id: int
    total_value: float
    trades: list[TradeRecord]


class OptimizationMethodInfo(BaseModel):
    id: str
    name: str
    description: str
