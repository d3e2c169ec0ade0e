from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db, require_writer
from backend.app.db.models.models_v1 import StockEntry, Supplier, User
from backend.services.audit import log_audit

router = APIRouter(prefix="/suppliers")


class SupplierCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    document: str | None = Field(default=None, max_length=32)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)


class SupplierUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    document: str | None = Field(default=None, max_length=32)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, max_length=32)
    active: bool | None = None


def _out(s: Supplier) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "document": s.document,
        "email": s.email,
        "phone": s.phone,
        "active": s.active,
    }


@router.get("")
def list_suppliers(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    rows = db.execute(select(Supplier).order_by(Supplier.name)).scalars().all()
    return [_out(s) for s in rows]


@router.post("", status_code=201)
def create_supplier(payload: SupplierCreate, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    exists = db.execute(select(Supplier).where(Supplier.name == payload.name)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Supplier already exists")

    s = Supplier(**payload.model_dump(), active=True)
    db.add(s)
    db.commit()
    db.refresh(s)

    log_audit(db, actor_id=user.id, action="SUPPLIER_CREATED", affected_table="suppliers", affected_id=s.id)
    return _out(s)


@router.patch("/{supplier_id}")
def update_supplier(
    supplier_id: int,
    payload: SupplierUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_writer),
):
    s = db.get(Supplier, supplier_id)
    if not s:
        raise HTTPException(status_code=404, detail="Supplier not found")

    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(s, field, value)
    db.commit()
    db.refresh(s)

    log_audit(db, actor_id=user.id, action="SUPPLIER_UPDATED", affected_table="suppliers", affected_id=s.id,
              details=changes)
    return _out(s)


@router.delete("/{supplier_id}")
def delete_supplier(supplier_id: int, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    s = db.get(Supplier, supplier_id)
    if not s:
        raise HTTPException(status_code=404, detail="Supplier not found")

    referenced = db.execute(
        select(StockEntry.id).where(StockEntry.supplier_id == supplier_id).limit(1)
    ).first() is not None
    if referenced:
        s.active = False
    else:
        db.delete(s)
    db.commit()

    log_audit(db, actor_id=user.id, action="SUPPLIER_DELETED", affected_table="suppliers", affected_id=supplier_id,
              details={"soft": referenced})
    return {"id": supplier_id, "deleted": not referenced, "deactivated": referenced}
