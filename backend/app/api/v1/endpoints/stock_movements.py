from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db
from backend.app.db.models.models_v1 import StockMovement, User
from backend.app.db.models.core_types import MovementKind
from backend.app.schemas.stock_level import StockMovementRead
from backend.services.reports import apply_period

router = APIRouter(prefix="/stock-movements")


@router.get("", response_model=list[StockMovementRead])
def list_movements(
    kind: MovementKind | None = None,
    product_id: int | None = None,
    location_id: int | None = None,
    document_id: int | None = None,
    start: date | None = None,
    end: date | None = None,
    search: str | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    """Ledger (append-only, READ ONLY). Aucun endpoint d'écriture directe."""
    stmt = select(StockMovement).order_by(StockMovement.created_at.desc(), StockMovement.id.desc())

    if kind is not None:
        stmt = stmt.where(StockMovement.kind == kind)
    if product_id is not None:
        stmt = stmt.where(StockMovement.product_id == product_id)
    if location_id is not None:
        stmt = stmt.where(StockMovement.location_id == location_id)
    if document_id is not None:
        stmt = stmt.where(StockMovement.document_id == document_id)
    stmt = apply_period(stmt, StockMovement.created_at, start, end)
    if search:
        stmt = stmt.where(StockMovement.reference.ilike(f"%{search}%"))

    return db.execute(stmt.limit(limit).offset(offset)).scalars().all()
