from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db, require_writer
from backend.app.db.models.models_v1 import Product, ProductGroup, StockMovement, User
from backend.services.audit import log_audit

router = APIRouter(prefix="/products")


class ProductCreate(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    description: str = Field(min_length=1, max_length=255)
    unit: str = Field(default="UN", min_length=1, max_length=16)
    group_id: int | None = None
    stock_minimum: int = Field(default=0, ge=0)
    stock_maximum: int = Field(default=0, ge=0)
    cost_price: Decimal = Field(default=Decimal("0"), ge=0)
    active: bool = True


class ProductUpdate(BaseModel):
    # les quantités en stock ne sont JAMAIS modifiables ici (moteur de stock uniquement)
    description: str | None = Field(default=None, min_length=1, max_length=255)
    unit: str | None = Field(default=None, min_length=1, max_length=16)
    group_id: int | None = None
    stock_minimum: int | None = Field(default=None, ge=0)
    stock_maximum: int | None = Field(default=None, ge=0)
    cost_price: Decimal | None = Field(default=None, ge=0)
    active: bool | None = None


def _out(p: Product) -> dict:
    return {
        "id": p.id,
        "code": p.code,
        "description": p.description,
        "unit": p.unit,
        "group_id": p.group_id,
        "stock_current": p.stock_current,
        "stock_requested": p.stock_requested,
        "stock_minimum": p.stock_minimum,
        "stock_maximum": p.stock_maximum,
        "cost_price": p.cost_price,
        "active": p.active,
    }


def _get_product(db: Session, product_id: int) -> Product:
    p = db.get(Product, product_id)
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    return p


def _check_group(db: Session, group_id: int | None) -> None:
    if group_id is not None and db.get(ProductGroup, group_id) is None:
        raise HTTPException(status_code=404, detail="Product group not found")


@router.get("")
def list_products(
    search: str | None = None,
    group_id: int | None = None,
    active: bool | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    stmt = select(Product).order_by(Product.code)
    if search:
        like = f"%{search}%"
        stmt = stmt.where(or_(Product.code.ilike(like), Product.description.ilike(like)))
    if group_id is not None:
        stmt = stmt.where(Product.group_id == group_id)
    if active is not None:
        stmt = stmt.where(Product.active.is_(active))

    return [_out(p) for p in db.execute(stmt).scalars().all()]


@router.get("/{product_id}")
def get_product(product_id: int, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return _out(_get_product(db, product_id))


@router.post("", status_code=201)
def create_product(payload: ProductCreate, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    exists = db.execute(select(Product).where(Product.code == payload.code)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Product code already exists")
    _check_group(db, payload.group_id)

    p = Product(
        code=payload.code,
        description=payload.description,
        unit=payload.unit,
        group_id=payload.group_id,
        stock_current=0,
        stock_requested=0,
        stock_minimum=payload.stock_minimum,
        stock_maximum=payload.stock_maximum,
        cost_price=payload.cost_price,
        active=payload.active,
    )
    db.add(p)
    db.commit()
    db.refresh(p)

    log_audit(db, actor_id=user.id, action="PRODUCT_CREATED", affected_table="products", affected_id=p.id,
              details={"code": p.code})
    return _out(p)


@router.patch("/{product_id}")
def update_product(
    product_id: int,
    payload: ProductUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_writer),
):
    p = _get_product(db, product_id)
    changes = payload.model_dump(exclude_unset=True)
    if "group_id" in changes:
        _check_group(db, changes["group_id"])

    for field, value in changes.items():
        setattr(p, field, value)
    db.commit()
    db.refresh(p)

    log_audit(db, actor_id=user.id, action="PRODUCT_UPDATED", affected_table="products", affected_id=p.id,
              details={k: str(v) for k, v in changes.items()})
    return _out(p)


@router.delete("/{product_id}")
def delete_product(product_id: int, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    """
    Produit avec historique de mouvements : désactivé, jamais supprimé.
    Sans mouvement : suppression physique.
    """
    p = _get_product(db, product_id)
    has_movements = db.execute(
        select(StockMovement.id).where(StockMovement.product_id == product_id).limit(1)
    ).first() is not None

    if has_movements:
        p.active = False
        action = "PRODUCT_DEACTIVATED"
    else:
        db.delete(p)
        action = "PRODUCT_DELETED"
    db.commit()

    log_audit(db, actor_id=user.id, action=action, affected_table="products", affected_id=product_id)
    return {"id": product_id, "deleted": not has_movements, "deactivated": has_movements}
