from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db, require_writer
from backend.app.db.models.models_v1 import Location, Product, StockEntry, StockLevel, User
from backend.app.schemas.stock import (
    AdjustStockRequest,
    CreateEntryRequest,
    ReceiveStockRequest,
    StockEntryRead,
)
from backend.app.schemas.stock_level import StockLevelRead, StockMovementRead
from backend.services import inventory, reports
from backend.services.uow import retry_on_conflict

router = APIRouter(prefix="/stock")


@router.get(
    "",
    response_model=list[StockLevelRead],
)
def get_stock(
    location_id: int | None = None,
    product_id: int | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    """
    Stock par local (READ ONLY)
    - quantity / quantity_reserved écrits uniquement par le moteur de stock
    - exposition sécurisée via schema Pydantic
    """

    stmt = (
        select(StockLevel)
        .join(Location, Location.id == StockLevel.location_id)
        .join(Product, Product.id == StockLevel.product_id)
        .order_by(Location.code, Product.code)
    )

    if location_id is not None:
        stmt = stmt.where(StockLevel.location_id == location_id)

    if product_id is not None:
        stmt = stmt.where(StockLevel.product_id == product_id)

    stock_levels = db.execute(stmt).scalars().all()
    return stock_levels


@router.get("/available")
def get_available(
    product_id: int,
    location_id: int | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    return {
        "product_id": product_id,
        "location_id": location_id,
        "available": inventory.available_quantity(db, product_id, location_id),
    }


@router.get("/low-stock")
def get_low_stock(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return [
        {
            "id": p.id,
            "code": p.code,
            "description": p.description,
            "stock_current": p.stock_current,
            "stock_minimum": p.stock_minimum,
        }
        for p in reports.low_stock(db)
    ]


@router.post("/receive", response_model=StockMovementRead, status_code=201)
def receive_stock(payload: ReceiveStockRequest, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    return retry_on_conflict(inventory.receive_stock, db, payload, actor_id=user.id)


@router.post("/adjust", response_model=StockMovementRead, status_code=201)
def adjust_stock(payload: AdjustStockRequest, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    return retry_on_conflict(inventory.adjust_stock, db, payload, actor_id=user.id)


@router.get("/entries", response_model=list[StockEntryRead])
def list_entries(
    supplier_id: int | None = None,
    limit: int = 100,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    stmt = select(StockEntry).order_by(StockEntry.created_at.desc(), StockEntry.id.desc()).limit(limit)
    if supplier_id is not None:
        stmt = stmt.where(StockEntry.supplier_id == supplier_id)
    return db.execute(stmt).scalars().all()


@router.get("/entries/{entry_id}", response_model=StockEntryRead)
def get_entry(entry_id: int, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    entry = db.get(StockEntry, entry_id)
    if not entry:
        raise HTTPException(status_code=404, detail="Stock entry not found")
    return entry


@router.post("/entries", response_model=StockEntryRead, status_code=201)
def create_entry(payload: CreateEntryRequest, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    return retry_on_conflict(inventory.register_entry, db, payload, actor_id=user.id)
