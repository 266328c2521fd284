from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..models import Holding
from ..schemas import HoldingCreate, HoldingRead, HoldingUpdate

router = APIRouter(prefix="/api/v1/holdings", tags=["Holdings"])


def _get_holding_or_404(db: Session, holding_id: int, user_id: str | None) -> Holding:
    holding = db.get(Holding, holding_id)
    if holding is None or (user_id is not None and holding.user_id != user_id):
        raise HTTPException(status_code=404, detail="Holding not found")
    return holding


@router.post("", response_model=HoldingRead, status_code=201)
async def create_holding(
    payload: HoldingCreate,
    db: Session = Depends(get_db),
) -> HoldingRead:
    """Record a new holding lot."""

    obj = Holding(
        user_id=payload.user_id,
        symbol=payload.symbol.strip().upper(),
        company_name=payload.company_name,
        quantity=payload.quantity,
        average_cost=payload.average_cost,
        category=payload.category,
        last_price=payload.last_price,
        notes=payload.notes,
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return HoldingRead.model_validate(obj)


@router.get("", response_model=List[HoldingRead])
async def list_holdings(
    user_id: str = Query(..., description="Owner whose holdings to list"),
    db: Session = Depends(get_db),
) -> List[HoldingRead]:
    """List a user's holding lots, oldest first."""

    items = (
        db.query(Holding)
        .filter(Holding.user_id == user_id)
        .order_by(Holding.id.asc())
        .all()
    )
    return [HoldingRead.model_validate(h) for h in items]


@router.put("/{holding_id}", response_model=HoldingRead)
async def update_holding(
    holding_id: int,
    payload: HoldingUpdate,
    user_id: str | None = Query(None),
    db: Session = Depends(get_db),
) -> HoldingRead:
    """Update an existing holding lot."""

    obj = _get_holding_or_404(db, holding_id, user_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(obj, field, value)
    db.commit()
    db.refresh(obj)
    return HoldingRead.model_validate(obj)


@router.delete("/{holding_id}", status_code=204)
async def delete_holding(
    holding_id: int,
    user_id: str | None = Query(None),
    db: Session = Depends(get_db),
) -> None:
    """Delete a holding lot."""

    obj = _get_holding_or_404(db, holding_id, user_id)
    db.delete(obj)
    db.commit()
