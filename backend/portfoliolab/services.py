from __future__ import annotations

import asyncio
import csv
import io
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence

import numpy as np
import pandas as pd
from sqlalchemy.orm import Session

from .black_litterman import BlackLittermanViews
from .config import Settings, get_settings
from .estimation import (
    CovarianceEstimate,
    CovarianceMethod,
    EstimationConfig,
    InputEstimationEngine,
    ReturnMethod,
    estimation_preset,
    insufficient_symbols,
    preset_names,
)
from .exceptions import (
    NoHoldingsError,
    OptimizationError,
    OptimizationNotFoundError,
)
from .market_data import MarketDataService, OHLCVBar, PriceStoreMarketDataService
from .models import AnalyticsEvent, Holding, OptimizationRun, TradePlan
from .optimization import (
    METHOD_DESCRIPTIONS,
    Constraints,
    OptimizationMethod,
    OptimizerResult,
    PortfolioOptimizationEngine,
    equal_weights,
    portfolio_return,
    portfolio_volatility,
    sharpe_ratio,
)
from .schemas import (
    ApplyResponse,
    EstimationMethodsRead,
    FrontierPointRead,
    OptimizeRequest,
    OptimizeResult,
    TradeRecord,
)

logger = logging.getLogger(__name__)

FALLBACK_METHOD = "equal-weight-fallback"
FALLBACK_ESTIMATION = "simple_fallback"
FALLBACK_LOOKBACK_DAYS = 252
UNCATEGORISED = "Uncategorised"

# Rebalancing thresholds in percentage points of total portfolio value.
TRADE_THRESHOLD_PCT = 1.0
HIGH_PRIORITY_PCT = 5.0


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass
class HoldingSnapshot:
    """Read-only view of a holding lot handed to the optimiser."""

    symbol: str
    quantity: float
    average_cost: float
    category: str | None = None
    last_price: float | None = None
    company_name: str | None = None


class HoldingsRepository:
    """Loads and refreshes holding lots in the meta DB."""

    def fetch_holdings(self, db: Session, user_id: str) -> List[HoldingSnapshot]:
        rows = (
            db.query(Holding)
            .filter(Holding.user_id == user_id)
            .order_by(Holding.id.asc())
            .all()
        )
        return [
            HoldingSnapshot(
                symbol=row.symbol,
                quantity=float(row.quantity),
                average_cost=float(row.average_cost),
                category=row.category,
                last_price=row.last_price,
                company_name=row.company_name,
            )
            for row in rows
        ]

    def update_last_prices(self, db: Session, user_id: str, prices: Mapping[str, float]) -> None:
        if not prices:
            return
        rows = (
            db.query(Holding)
            .filter(
                Holding.user_id == user_id,
                Holding.symbol.in_(list(prices)),  # type: ignore[arg-type]
            )
            .all()
        )
        for row in rows:
            row.last_price = prices[row.symbol]


class OptimizationResultStore:
    """Persistence for optimisation runs and applied trade plans."""

    def save(self, db: Session, run: OptimizationRun) -> OptimizationRun:
        db.add(run)
        db.flush()
        return run

    def list_for_user(self, db: Session, user_id: str, limit: int = 20) -> List[OptimizationRun]:
        return (
            db.query(OptimizationRun)
            .filter(OptimizationRun.user_id == user_id)
            .order_by(OptimizationRun.created_at.desc())
            .limit(limit)
            .all()
        )

    def get(self, db: Session, user_id: str, optimization_id: str) -> OptimizationRun:
        run = db.get(OptimizationRun, optimization_id)
        if run is None or run.user_id != user_id:
            raise OptimizationNotFoundError(f"Optimization {optimization_id} not found")
        return run

    def save_trade_plan(
        self,
        db: Session,
        *,
        run: OptimizationRun,
        total_value: float,
        trades: list[dict],
    ) -> TradePlan:
        plan = TradePlan(
            optimization_id=run.id,
            user_id=run.user_id,
            total_value=total_value,
            trades_json=trades,
        )
        db.add(plan)
        db.flush()
        return plan


class AnalyticsService:
    """Append-only user event log."""

    def log_event(
        self,
        db: Session,
        *,
        user_id: str,
        event_type: str,
        event_data: Dict[str, Any] | None = None,
    ) -> AnalyticsEvent:
        event = AnalyticsEvent(user_id=user_id, event_type=event_type, event_data=event_data)
        db.add(event)
        logger.info(
            "Analytics event",
            extra={"user_id": user_id, "event_type": event_type},
        )
        return event


# ---------------------------------------------------------------------------
# Allocation helpers
# ---------------------------------------------------------------------------


def build_positions(
    holdings: Sequence[HoldingSnapshot],
    quotes: Mapping[str, float | None] | None = None,
) -> pd.DataFrame:
    """One row per lot with the price used for valuation and its value.

    Price preference is live quote, then the stored last price, then the
    average cost.
    """

    quotes = quotes or {}
    rows = []
    for h in holdings:
        price = quotes.get(h.symbol) or h.last_price or h.average_cost
        rows.append(
            {
                "symbol": h.symbol,
                "category": h.category or UNCATEGORISED,
                "quantity": h.quantity,
                "price": float(price),
                "value": h.quantity * float(price),
            }
        )
    return pd.DataFrame(rows, columns=["symbol", "category", "quantity", "price", "value"])


def _percentages(values: pd.Series, total: float) -> pd.Series:
    if total <= 0.0:
        return values * 0.0
    return values / total * 100.0


def current_allocation(positions: pd.DataFrame) -> list[dict]:
    """Portfolio value and percentage per category, largest first."""

    total = float(positions["value"].sum())
    by_category = positions.groupby("category")["value"].sum().sort_values(ascending=False)
    pct = _percentages(by_category, total)
    return [
        {"name": str(name), "value": round(float(value), 2), "percentage": round(float(pct[name]), 4)}
        for name, value in by_category.items()
    ]


def symbol_percentages(positions: pd.DataFrame) -> dict[str, float]:
    total = float(positions["value"].sum())
    by_symbol = positions.groupby("symbol", sort=False)["value"].sum()
    return {str(sym): float(v) for sym, v in _percentages(by_symbol, total).items()}


def symbol_categories(positions: pd.DataFrame) -> dict[str, str]:
    return {
        str(sym): str(cat)
        for sym, cat in positions.groupby("symbol", sort=False)["category"].first().items()
    }


def build_implementation_plan(
    current_pct: Mapping[str, float],
    target_pct: Mapping[str, float],
    total_value: float,
) -> list[dict]:
    """Category-level BUY/SELL steps for deltas above the materiality threshold.

    Percentages are in points (0-100). A delta above 1 point (1% of total
    value) produces a step; above 5 points it is HIGH priority. Steps are
    sorted by absolute delta, largest first.
    """

    steps: list[dict] = []
    for name in sorted(set(current_pct) | set(target_pct)):
        current = float(current_pct.get(name, 0.0))
        target = float(target_pct.get(name, 0.0))
        delta = target - current
        if abs(delta) <= TRADE_THRESHOLD_PCT:
            continue
        steps.append(
            {
                "sector": name,
                "action": "BUY" if delta > 0 else "SELL",
                "change_percent": round(delta, 4),
                "amount": round(abs(delta) / 100.0 * total_value, 2),
                "current_value": round(current / 100.0 * total_value, 2),
                "target_value": round(target / 100.0 * total_value, 2),
                "priority": "HIGH" if abs(delta) > HIGH_PRIORITY_PCT else "MEDIUM",
            }
        )
    steps.sort(key=lambda step: abs(step["change_percent"]), reverse=True)
    return steps


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclass
class EstimationPlan:
    returns_method: ReturnMethod
    covariance_method: CovarianceMethod
    lookback: int
    preset: str | None = None
    returns_options: dict[str, Any] = field(default_factory=dict)
    covariance_options: dict[str, Any] = field(default_factory=dict)


class OptimizerService:
    """Request-scoped driver from holdings to a persisted optimisation result."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        market_data: MarketDataService | None = None,
        estimation_engine: InputEstimationEngine | None = None,
        optimization_engine: PortfolioOptimizationEngine | None = None,
        holdings_repository: HoldingsRepository | None = None,
        result_store: OptimizationResultStore | None = None,
        analytics: AnalyticsService | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._market_data = market_data or PriceStoreMarketDataService(settings=self._settings)
        self._estimation_engine = estimation_engine
        self._optimization_engine = optimization_engine
        self._holdings = holdings_repository or HoldingsRepository()
        self._results = result_store or OptimizationResultStore()
        self._analytics = analytics or AnalyticsService()

    # -- request resolution -------------------------------------------------

    def resolve_estimation_plan(self, request: OptimizeRequest) -> EstimationPlan:
        """Combine preset defaults with explicit request fields.

        Raises UnknownMethodError for unregistered method names.
        """

        est = request.estimation
        preset_name: str | None = None
        preset = EstimationConfig()
        if est.preset:
            preset = estimation_preset(est.preset)
            preset_name = est.preset if est.preset in preset_names() else "moderate"

        returns_method = ReturnMethod.parse(est.returns or preset.returns_method)
        covariance_method = CovarianceMethod.parse(est.covariance or preset.covariance_method)
        lookback = est.lookback_days or preset.lookback or self._settings.default_lookback_days

        returns_options = dict(preset.returns_options) if returns_method.value == preset.returns_method else {}
        covariance_options = (
            dict(preset.covariance_options)
            if covariance_method.value == preset.covariance_method
            else {}
        )
        if est.shrinkage_intensity is not None:
            covariance_options["shrinkage_intensity"] = est.shrinkage_intensity
        return EstimationPlan(
            returns_method=returns_method,
            covariance_method=covariance_method,
            lookback=lookback,
            preset=preset_name,
            returns_options=returns_options,
            covariance_options=covariance_options,
        )

    @staticmethod
    def build_constraints(request: OptimizeRequest) -> Constraints:
        long_only = not request.constraints.allow_short_selling
        return Constraints(
            long_only=long_only,
            max_weight=request.max_position_size_pct / 100.0,
            min_weight=(request.constraints.min_position_size_pct / 100.0 if long_only else None),
        )

    def _engines(self, request: OptimizeRequest) -> tuple[InputEstimationEngine, PortfolioOptimizationEngine]:
        if self._estimation_engine is not None and request.seed is None:
            estimation = self._estimation_engine
        else:
            estimation = InputEstimationEngine(
                settings=self._settings,
                rng=np.random.default_rng(request.seed),
            )
        optimization = self._optimization_engine or PortfolioOptimizationEngine(
            settings=self._settings,
            estimation_engine=estimation,
        )
        return estimation, optimization

    # -- market data fan-out --------------------------------------------------

    async def _fetch_history(self, symbol: str, period: str) -> List[OHLCVBar]:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._market_data.fetch_historical_prices, symbol, period, "1d"),
                timeout=self._settings.history_fetch_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("History fetch timed out", extra={"symbol": symbol})
        except Exception:
            # Per-symbol isolation: one failing provider call degrades only
            # that symbol.
            logger.warning("History fetch failed", extra={"symbol": symbol}, exc_info=True)
        return []

    async def fetch_histories(self, symbols: Sequence[str], period: str) -> dict[str, List[OHLCVBar]]:
        results = await asyncio.gather(*(self._fetch_history(sym, period) for sym in symbols))
        return dict(zip(symbols, results))

    def _lookup_quote(self, symbol: str) -> float | None:
        try:
            return self._market_data.get_quote(symbol)
        except Exception:
            logger.warning("Quote lookup failed", extra={"symbol": symbol}, exc_info=True)
            return None

    async def _fetch_quote(self, symbol: str) -> float | None:
        return await asyncio.to_thread(self._lookup_quote, symbol)

    async def fetch_quotes(self, symbols: Sequence[str]) -> dict[str, float | None]:
        results = await asyncio.gather(*(self._fetch_quote(sym) for sym in symbols))
        return dict(zip(symbols, results))

    # -- optimisation -----------------------------------------------------------

    def _optimizer_params(
        self,
        method: OptimizationMethod,
        request: OptimizeRequest,
        symbols: Sequence[str],
        mu: np.ndarray,
        cov: CovarianceEstimate,
        engine: PortfolioOptimizationEngine,
    ) -> dict[str, Any]:
        if method is OptimizationMethod.MEAN_VARIANCE:
            return {
                "target_return": engine.target_return_for_risk_tolerance(
                    mu, cov.matrix, request.risk_tolerance
                )
            }
        if method is OptimizationMethod.BLACK_LITTERMAN:
            params: dict[str, Any] = {}
            if request.market_caps:
                params["market_weights"] = [
                    float(request.market_caps.get(sym, 0.0)) for sym in symbols
                ]
            if request.views:
                params["views"] = BlackLittermanViews.from_symbol_views(
                    symbols, [view.model_dump() for view in request.views]
                )
            return params
        return {}

    def _returns_options(
        self,
        plan: EstimationPlan,
        request: OptimizeRequest,
        market_history: Sequence[OHLCVBar] | None,
        covariance: CovarianceEstimate | None = None,
    ) -> dict[str, Any]:
        options = dict(plan.returns_options)
        if plan.returns_method is ReturnMethod.CAPM:
            options["market_history"] = market_history or []
        elif plan.returns_method is ReturnMethod.BLACK_LITTERMAN:
            options["covariance"] = covariance
            if request.market_caps:
                options["market_weights"] = request.market_caps
            if request.views:
                options["views"] = [view.model_dump() for view in request.views]
        return options

    async def run_optimization(self, meta_db: Session, *, request: OptimizeRequest) -> OptimizeResult:
        """Optimise the caller's holdings and persist the run.

        Engine failures never surface as errors: they produce an equal-weight
        result tagged with `equal-weight-fallback` and `simple_fallback`.
        """

        user_id = request.user_id
        method = OptimizationMethod.parse(request.method)
        plan = self.resolve_estimation_plan(request)
        constraints = self.build_constraints(request)

        holdings = self._holdings.fetch_holdings(meta_db, user_id)
        if not holdings:
            raise NoHoldingsError(f"No holdings found for user {user_id}")

        symbols = list(dict.fromkeys(h.symbol for h in holdings))
        proxy = self._settings.market_proxy_symbol
        fetch_symbols = list(symbols)
        if plan.returns_method is ReturnMethod.CAPM and proxy not in fetch_symbols:
            fetch_symbols.append(proxy)

        period = f"{max(1, math.ceil(plan.lookback / 252))}y"
        histories = await self.fetch_histories(fetch_symbols, period)
        quotes = await self.fetch_quotes(symbols)

        asset_histories = {sym: histories.get(sym, []) for sym in symbols}
        degraded = insufficient_symbols(asset_histories, plan.lookback)
        diagnostics: Dict[str, object] = {
            "universe_size": len(symbols),
            "insufficient_history": degraded,
            "history_period": period,
        }
        if degraded:
            logger.warning(
                "Insufficient price history; using default estimates",
                extra={"user_id": user_id, "symbols": degraded},
            )

        positions = build_positions(holdings, quotes)
        estimation, engine = self._engines(request)

        result: OptimizerResult | None = None
        mu: np.ndarray | None = None
        cov: CovarianceEstimate | None = None
        frontier = None
        fallback_reason: str | None = None

        if len(degraded) == len(symbols):
            fallback_reason = "No usable price history for any held symbol"
        else:
            try:
                cov = estimation.estimate_covariance_matrix(
                    asset_histories,
                    plan.covariance_method,
                    lookback=plan.lookback,
                    **plan.covariance_options,
                )
                returns = estimation.estimate_expected_returns(
                    asset_histories,
                    plan.returns_method,
                    lookback=plan.lookback,
                    **self._returns_options(plan, request, histories.get(proxy), cov),
                )
                mu = np.array([returns.get(sym, 0.0) for sym in cov.symbols], dtype=float)
                params = self._optimizer_params(method, request, cov.symbols, mu, cov, engine)
                result = engine.optimize(method, mu, cov.matrix, constraints, **params)
            except (OptimizationError, np.linalg.LinAlgError, ValueError) as exc:
                fallback_reason = str(exc)

        if result is None:
            logger.warning(
                "Optimisation fell back to equal weights",
                extra={"user_id": user_id, "method": method.value, "reason": fallback_reason},
            )
            weights = equal_weights(len(symbols))
            weight_by_symbol = dict(zip(symbols, weights))
            estimation_methods = {
                "returns": FALLBACK_ESTIMATION,
                "covariance": FALLBACK_ESTIMATION,
                "lookback_days": FALLBACK_LOOKBACK_DAYS,
            }
            stats = self._fallback_stats(symbols, weights, mu, cov, engine.risk_free_rate)
            used_method = FALLBACK_METHOD
            diagnostics["fallback_reason"] = fallback_reason
        else:
            weight_by_symbol = dict(zip(cov.symbols, result.weights))
            estimation_methods = {
                "returns": plan.returns_method.value,
                "covariance": plan.covariance_method.value,
                "lookback_days": plan.lookback,
                "preset": plan.preset,
                "shrinkage_intensity": cov.shrinkage_intensity,
            }
            stats = {
                "expected_return": result.expected_return,
                "expected_volatility": result.expected_volatility,
                "sharpe_ratio": result.sharpe_ratio,
                "cvar": result.cvar,
            }
            used_method = result.method
            diagnostics.update(result.diagnostics)
            if result.implied_returns is not None:
                diagnostics["implied_returns"] = {
                    sym: float(v) for sym, v in zip(cov.symbols, result.implied_returns)
                }

            if method is OptimizationMethod.MEAN_VARIANCE or request.frontier_points:
                try:
                    points = engine.generate_efficient_frontier(
                        mu, cov.matrix, request.frontier_points
                    )
                    frontier = [
                        {"risk": p.risk, "return": p.expected_return, "weights": p.weights}
                        for p in points
                    ]
                except (OptimizationError, np.linalg.LinAlgError, ValueError) as exc:
                    logger.warning(
                        "Efficient frontier omitted",
                        extra={"user_id": user_id, "error": str(exc)},
                    )

        total_value = float(positions["value"].sum())
        current_symbol_pct = symbol_percentages(positions)
        categories = symbol_categories(positions)

        optimized_allocation = {
            sym: {
                "percentage": round(float(w) * 100.0, 4),
                "change": round(float(w) * 100.0 - current_symbol_pct.get(sym, 0.0), 4),
            }
            for sym, w in weight_by_symbol.items()
        }
        current = current_allocation(positions)
        target_by_category: dict[str, float] = {}
        for sym, w in weight_by_symbol.items():
            cat = categories.get(sym, UNCATEGORISED)
            target_by_category[cat] = target_by_category.get(cat, 0.0) + float(w) * 100.0
        implementation_plan = build_implementation_plan(
            {item["name"]: item["percentage"] for item in current},
            target_by_category,
            total_value,
        )

        run = OptimizationRun(
            user_id=user_id,
            method=used_method,
            requested_method=method.value,
            risk_tolerance=request.risk_tolerance,
            params_json=request.model_dump(mode="json"),
            estimation_json=estimation_methods,
            current_allocation_json=current,
            optimized_allocation_json=optimized_allocation,
            implementation_plan_json=implementation_plan,
            frontier_json=frontier,
            diagnostics_json=diagnostics,
            is_fallback=result is None,
            **stats,
        )
        self._results.save(meta_db, run)
        self._holdings.update_last_prices(
            meta_db, user_id, {sym: q for sym, q in quotes.items() if q is not None}
        )
        self._analytics.log_event(
            meta_db,
            user_id=user_id,
            event_type="optimization_run",
            event_data={
                "optimization_id": run.id,
                "method": used_method,
                "requested_method": method.value,
                "is_fallback": result is None,
                "num_holdings": len(symbols),
            },
        )
        meta_db.commit()
        meta_db.refresh(run)
        return self.to_result(run)

    @staticmethod
    def _fallback_stats(
        symbols: Sequence[str],
        weights: np.ndarray,
        mu: np.ndarray | None,
        cov: CovarianceEstimate | None,
        risk_free_rate: float,
    ) -> dict[str, float | None]:
        stats: dict[str, float | None] = {
            "expected_return": None,
            "expected_volatility": None,
            "sharpe_ratio": None,
            "cvar": None,
        }
        if mu is None or cov is None or list(cov.symbols) != list(symbols):
            return stats
        stats["expected_return"] = portfolio_return(weights, mu)
        stats["expected_volatility"] = portfolio_volatility(weights, cov.matrix)
        stats["sharpe_ratio"] = sharpe_ratio(weights, mu, cov.matrix, risk_free_rate)
        return stats

    # -- reads, apply and export ----------------------------------------------

    @staticmethod
    def to_result(run: OptimizationRun) -> OptimizeResult:
        estimation = dict(run.estimation_json or {})
        return OptimizeResult(
            id=run.id,
            user_id=run.user_id,
            method=run.method,
            requested_method=run.requested_method or run.method,
            risk_tolerance=run.risk_tolerance,
            current_allocation=run.current_allocation_json or [],
            optimized_allocation=run.optimized_allocation_json or {},
            expected_return=run.expected_return,
            expected_volatility=run.expected_volatility,
            sharpe_ratio=run.sharpe_ratio,
            cvar=run.cvar,
            efficient_frontier=(
                [FrontierPointRead.model_validate(p) for p in run.frontier_json]
                if run.frontier_json is not None
                else None
            ),
            implementation_plan=run.implementation_plan_json or [],
            estimation_methods=EstimationMethodsRead(
                returns=estimation.get("returns", FALLBACK_ESTIMATION),
                covariance=estimation.get("covariance", FALLBACK_ESTIMATION),
                lookback_days=estimation.get("lookback_days", FALLBACK_LOOKBACK_DAYS),
                preset=estimation.get("preset"),
                shrinkage_intensity=estimation.get("shrinkage_intensity"),
            ),
            is_fallback=bool(run.is_fallback),
            diagnostics=run.diagnostics_json or {},
            created_at=run.created_at,
        )

    def get_history(self, meta_db: Session, *, user_id: str, limit: int = 20) -> List[OptimizationRun]:
        return self._results.list_for_user(meta_db, user_id, limit)

    def get_result(self, meta_db: Session, *, user_id: str, optimization_id: str) -> OptimizeResult:
        return self.to_result(self._results.get(meta_db, user_id, optimization_id))

    def apply_optimization(
        self,
        meta_db: Session,
        *,
        user_id: str,
        optimization_id: str,
    ) -> ApplyResponse:
        """Turn an optimisation into symbol-level trades and record the plan.

        Symbols whose target and current weights differ by more than 1% of
        total value get a trade; symbols not currently held are BUY trades.
        """

        run = self._results.get(meta_db, user_id, optimization_id)
        holdings = self._holdings.fetch_holdings(meta_db, user_id)
        if not holdings:
            raise NoHoldingsError(f"No holdings found for user {user_id}")

        symbols = list(dict.fromkeys(h.symbol for h in holdings))
        targets = {sym: float(v["percentage"]) for sym, v in (run.optimized_allocation_json or {}).items()}
        quotes = {sym: self._lookup_quote(sym) for sym in dict.fromkeys([*symbols, *targets])}
        positions = build_positions(holdings, quotes)
        total_value = float(positions["value"].sum())
        current_pct = symbol_percentages(positions)
        prices = positions.groupby("symbol", sort=False)["price"].last().to_dict()

        trades: list[dict] = []
        for sym in dict.fromkeys([*current_pct, *targets]):
            current = current_pct.get(sym, 0.0)
            target = targets.get(sym, 0.0)
            delta = target - current
            if abs(delta) <= TRADE_THRESHOLD_PCT:
                continue
            amount = abs(delta) / 100.0 * total_value
            price = prices.get(sym) or quotes.get(sym)
            trades.append(
                TradeRecord(
                    symbol=sym,
                    action="BUY" if delta > 0 else "SELL",
                    amount=round(amount, 2),
                    quantity=round(amount / price, 6) if price else None,
                    price=float(price) if price else None,
                    current_value=round(current / 100.0 * total_value, 2),
                    target_value=round(target / 100.0 * total_value, 2),
                    current_percentage=round(current, 4),
                    target_percentage=round(target, 4),
                ).model_dump()
            )
        trades.sort(key=lambda t: t["amount"], reverse=True)

        plan = self._results.save_trade_plan(meta_db, run=run, total_value=total_value, trades=trades)
        self._analytics.log_event(
            meta_db,
            user_id=user_id,
            event_type="optimization_applied",
            event_data={
                "optimization_id": run.id,
                "trade_plan_id": plan.id,
                "num_trades": len(trades),
            },
        )
        meta_db.commit()
        return ApplyResponse(
            optimization_id=run.id,
            trade_plan_id=plan.id,
            total_value=round(total_value, 2),
            trades=[TradeRecord(**t) for t in trades],
        )

    def export_result(
        self,
        meta_db: Session,
        *,
        user_id: str,
        optimization_id: str,
        fmt: str = "json",
    ) -> tuple[str, str]:
        """Render a stored result as JSON or CSV; returns (content, media type)."""

        fmt = fmt.lower()
        if fmt not in {"json", "csv"}:
            raise ValueError(f"Unsupported export format: {fmt}")

        result = self.get_result(meta_db, user_id=user_id, optimization_id=optimization_id)
        if fmt == "json":
            content = result.model_dump_json(by_alias=True, indent=2)
            media_type = "application/json"
        else:
            content = self._result_to_csv(result)
            media_type = "text/csv"

        self._analytics.log_event(
            meta_db,
            user_id=user_id,
            event_type="optimization_report_exported",
            event_data={"optimization_id": optimization_id, "format": fmt},
        )
        meta_db.commit()
        return content, media_type

    @staticmethod
    def _result_to_csv(result: OptimizeResult) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["section", "name", "action", "value", "change", "amount", "priority"])
        writer.writerow(["metric", "method", "", result.method, "", "", ""])
        for label, value in (
            ("expected_return", result.expected_return),
            ("expected_volatility", result.expected_volatility),
            ("sharpe_ratio", result.sharpe_ratio),
            ("cvar", result.cvar),
        ):
            writer.writerow(["metric", label, "", "" if value is None else value, "", "", ""])
        for item in result.current_allocation:
            writer.writerow(["current", item.name, "", item.percentage, "", item.value, ""])
        for sym, weight in result.optimized_allocation.items():
            writer.writerow(["optimized", sym, "", weight.percentage, weight.change, "", ""])
        for step in result.implementation_plan:
            writer.writerow(
                [
                    "plan",
                    step.sector,
                    step.action,
                    "",
                    step.change_percent,
                    step.amount,
                    step.priority,
                ]
            )
        return buffer.getvalue()

    @staticmethod
    def list_methods() -> list[dict[str, str]]:
        return [
            {"id": method.value, "name": name, "description": description}
            for method, (name, description) in METHOD_DESCRIPTIONS.items()
        ]
