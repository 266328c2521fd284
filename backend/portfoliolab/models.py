import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Holding(Base):
    """A single position lot owned by a user.

    A symbol may appear in several rows (separate lots); optimisation
    aggregates quantity and value per symbol.
    """

    __tablename__ = "holdings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False, index=True)
    company_name = Column(String, nullable=True)
    quantity = Column(Float, nullable=False)
    average_cost = Column(Float, nullable=False)
    # Asset class or sector bucket used for allocation reports, e.g. Tech.
    category = Column(String, nullable=True)
    # Last known market price; refreshed opportunistically by optimisation.
    last_price = Column(Float, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class OptimizationRun(Base):
    __tablename__ = "optimization_results"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False, index=True)
    # Method actually used, e.g. "equal-weight-fallback" after a failure.
    method = Column(String, nullable=False)
    requested_method = Column(String, nullable=True)
    risk_tolerance = Column(Float, nullable=True)
    params_json = Column(JSON, nullable=True)
    estimation_json = Column(JSON, nullable=True)
    current_allocation_json = Column(JSON, nullable=True)
    optimized_allocation_json = Column(JSON, nullable=True)
    implementation_plan_json = Column(JSON, nullable=True)
    frontier_json = Column(JSON, nullable=True)
    diagnostics_json = Column(JSON, nullable=True)
    expected_return = Column(Float, nullable=True)
    expected_volatility = Column(Float, nullable=True)
    sharpe_ratio = Column(Float, nullable=True)
    cvar = Column(Float, nullable=True)
    is_fallback = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_now, nullable=False, index=True)

    trade_plans = relationship(
        "TradePlan",
        back_populates="optimization",
        cascade="all, delete-orphan",
    )


class TradePlan(Base):
    """Symbol-level trades recorded when an optimisation is applied."""

    __tablename__ = "trade_plans"

    id = Column(Integer, primary_key=True, index=True)
    optimization_id = Column(
        String,
        ForeignKey("optimization_results.id"),
        nullable=False,
        index=True,
    )
    user_id = Column(String, nullable=False, index=True)
    total_value = Column(Float, nullable=False)
    trades_json = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    optimization = relationship("OptimizationRun", back_populates="trade_plans")


class AnalyticsEvent(Base):
    __tablename__ = "analytics_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False, index=True)
    event_data = Column(JSON, nullable=True)
    timestamp = Column(DateTime, default=_now, nullable=False, index=True)
