from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db, require_writer
from backend.app.core.errors import ValidationError
from backend.app.db.models.models_v1 import Location, StockLevel, Transfer, User
from backend.services.audit import log_audit

router = APIRouter(prefix="/locations")


class LocationCreate(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=200)
    address: str | None = Field(default=None, max_length=255)
    responsible: str | None = Field(default=None, max_length=200)


class LocationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    address: str | None = Field(default=None, max_length=255)
    responsible: str | None = Field(default=None, max_length=200)
    active: bool | None = None


def _out(l: Location) -> dict:
    return {
        "id": l.id,
        "code": l.code,
        "name": l.name,
        "address": l.address,
        "responsible": l.responsible,
        "active": l.active,
    }


def _get_location(db: Session, location_id: int) -> Location:
    l = db.get(Location, location_id)
    if not l:
        raise HTTPException(status_code=404, detail="Location not found")
    return l


@router.get("")
def list_locations(
    active: bool | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    stmt = select(Location).order_by(Location.code)
    if active is not None:
        stmt = stmt.where(Location.active.is_(active))

    rows = db.execute(stmt).scalars().all()
    return [_out(l) for l in rows]


@router.get("/{location_id}")
def get_location(location_id: int, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return _out(_get_location(db, location_id))


@router.post("", status_code=201)
def create_location(payload: LocationCreate, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    exists = db.execute(select(Location).where(Location.code == payload.code)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Location code already exists")

    l = Location(**payload.model_dump(), active=True)
    db.add(l)
    db.commit()
    db.refresh(l)

    log_audit(db, actor_id=user.id, action="LOCATION_CREATED", affected_table="locations", affected_id=l.id)
    return _out(l)


@router.patch("/{location_id}")
def update_location(
    location_id: int,
    payload: LocationUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_writer),
):
    l = _get_location(db, location_id)
    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(l, field, value)
    db.commit()
    db.refresh(l)

    log_audit(db, actor_id=user.id, action="LOCATION_UPDATED", affected_table="locations", affected_id=l.id,
              details=changes)
    return _out(l)


@router.delete("/{location_id}")
def delete_location(location_id: int, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    l = _get_location(db, location_id)

    has_stock = db.execute(
        select(StockLevel.product_id).where(StockLevel.location_id == location_id).limit(1)
    ).first() is not None
    has_transfers = db.execute(
        select(Transfer.id)
        .where(or_(Transfer.source_location_id == location_id, Transfer.destination_location_id == location_id))
        .limit(1)
    ).first() is not None
    if has_stock or has_transfers:
        raise ValidationError("Location is referenced by stock levels or transfers")

    db.delete(l)
    db.commit()

    log_audit(db, actor_id=user.id, action="LOCATION_DELETED", affected_table="locations", affected_id=location_id)
    return {"id": location_id, "deleted": True}
