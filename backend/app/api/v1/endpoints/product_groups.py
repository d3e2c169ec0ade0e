from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db, require_writer
from backend.app.db.models.models_v1 import Product, ProductGroup, User
from backend.services.audit import log_audit

router = APIRouter(prefix="/product-groups")


class ProductGroupCreate(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=200)


@router.get("")
def list_groups(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    rows = db.execute(select(ProductGroup).order_by(ProductGroup.code)).scalars().all()
    return [{"id": g.id, "code": g.code, "name": g.name, "active": g.active} for g in rows]


@router.post("", status_code=201)
def create_group(payload: ProductGroupCreate, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    exists = db.execute(select(ProductGroup).where(ProductGroup.code == payload.code)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Product group code already exists")

    g = ProductGroup(code=payload.code, name=payload.name, active=True)
    db.add(g)
    db.commit()
    db.refresh(g)

    log_audit(db, actor_id=user.id, action="GROUP_CREATED", affected_table="product_groups", affected_id=g.id)
    return {"id": g.id, "code": g.code, "name": g.name}


@router.delete("/{group_id}")
def delete_group(group_id: int, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    g = db.get(ProductGroup, group_id)
    if not g:
        raise HTTPException(status_code=404, detail="Product group not found")

    in_use = db.execute(select(Product.id).where(Product.group_id == group_id).limit(1)).first() is not None
    if in_use:
        g.active = False
    else:
        db.delete(g)
    db.commit()

    log_audit(db, actor_id=user.id, action="GROUP_DELETED", affected_table="product_groups", affected_id=group_id,
              details={"soft": in_use})
    return {"id": group_id, "deleted": not in_use, "deactivated": in_use}
