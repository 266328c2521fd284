from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import get_db
from ..exceptions import (
    NoHoldingsError,
    OptimizationNotFoundError,
    UnknownMethodError,
)
from ..market_data import MarketDataService, PriceStoreMarketDataService
from ..schemas import (
    ApplyResponse,
    OptimizationHistoryItem,
    OptimizationMethodInfo,
    OptimizeRequest,
    OptimizeResult,
)
from ..services import OptimizerService

router = APIRouter(prefix="/api/v1/optimization", tags=["Optimization"])

_market_data: MarketDataService | None = None


def get_market_data_service() -> MarketDataService:
    """Process-wide market data service; owns the shared quote cache."""

    global _market_data
    if _market_data is None:
        _market_data = PriceStoreMarketDataService(settings=get_settings())
    return _market_data


def get_optimizer_service(
    market_data: MarketDataService = Depends(get_market_data_service),
) -> OptimizerService:
    return OptimizerService(settings=get_settings(), market_data=market_data)


@router.post("/optimize", response_model=OptimizeResult)
async def optimize_portfolio(
    payload: OptimizeRequest,
    meta_db: Session = Depends(get_db),
    service: OptimizerService = Depends(get_optimizer_service),
) -> OptimizeResult:
    """Optimise a user's holdings with the requested method."""

    try:
        return await service.run_optimization(meta_db, request=payload)
    except UnknownMethodError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NoHoldingsError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/history", response_model=List[OptimizationHistoryItem])
async def optimization_history(
    user_id: str = Query(...),
    limit: int = Query(20, ge=1, le=200),
    meta_db: Session = Depends(get_db),
    service: OptimizerService = Depends(get_optimizer_service),
) -> List[OptimizationHistoryItem]:
    """List a user's most recent optimisation runs."""

    runs = service.get_history(meta_db, user_id=user_id, limit=limit)
    return [OptimizationHistoryItem.model_validate(run) for run in runs]


@router.get("/result/{optimization_id}", response_model=OptimizeResult)
async def optimization_result(
    optimization_id: str,
    user_id: str = Query(...),
    meta_db: Session = Depends(get_db),
    service: OptimizerService = Depends(get_optimizer_service),
) -> OptimizeResult:
    """Fetch a stored optimisation result."""

    try:
        return service.get_result(meta_db, user_id=user_id, optimization_id=optimization_id)
    except OptimizationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/apply/{optimization_id}", response_model=ApplyResponse)
async def apply_optimization(
    optimization_id: str,
    user_id: str = Query(...),
    meta_db: Session = Depends(get_db),
    service: OptimizerService = Depends(get_optimizer_service),
) -> ApplyResponse:
    """Generate and record the trades needed to reach an optimisation."""

    try:
        return service.apply_optimization(
            meta_db, user_id=user_id, optimization_id=optimization_id
        )
    except (OptimizationNotFoundError, NoHoldingsError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/methods", response_model=List[OptimizationMethodInfo])
async def optimization_methods() -> List[OptimizationMethodInfo]:
    """List the available optimisation methods."""

    return [OptimizationMethodInfo(**item) for item in OptimizerService.list_methods()]


@router.get("/export/{optimization_id}")
async def export_optimization(
    optimization_id: str,
    user_id: str = Query(...),
    format: str = Query("json", description="json or csv"),
    meta_db: Session = Depends(get_db),
    service: OptimizerService = Depends(get_optimizer_service),
) -> Response:
    """Download a stored optimisation result."""

    try:
        content, media_type = service.export_result(
            meta_db,
            user_id=user_id,
            optimization_id=optimization_id,
            fmt=format,
        )
    except OptimizationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    filename = f"optimization_{optimization_id}.{format.lower()}"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
