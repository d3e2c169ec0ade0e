from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db, require_admin
from backend.app.db.models.core_types import Role
from backend.app.db.models.models_v1 import User
from backend.services.audit import log_audit

router = APIRouter(prefix="/users")


class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(min_length=3, max_length=255)
    role: Role = Role.viewer


class UserUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    role: Role | None = None
    active: bool | None = None


def _out(u: User) -> dict:
    return {"id": u.id, "name": u.name, "email": u.email, "role": u.role, "active": u.active}


@router.get("/me")
def whoami(user: User = Depends(get_current_user)):
    return _out(user)


@router.get("")
def list_users(db: Session = Depends(get_db), _: User = Depends(require_admin)):
    rows = db.execute(select(User).order_by(User.name)).scalars().all()
    return [_out(u) for u in rows]


@router.post("", status_code=201)
def create_user(payload: UserCreate, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    exists = db.execute(select(User).where(User.email == payload.email)).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Email already exists")

    u = User(name=payload.name, email=payload.email, role=payload.role, active=True)
    db.add(u)
    db.commit()
    db.refresh(u)

    log_audit(db, actor_id=admin.id, action="USER_CREATED", affected_table="users", affected_id=u.id,
              details={"role": u.role.value})
    return _out(u)


@router.patch("/{user_id}")
def update_user(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    u = db.get(User, user_id)
    if not u:
        raise HTTPException(status_code=404, detail="User not found")

    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(u, field, value)
    db.commit()
    db.refresh(u)

    log_audit(db, actor_id=admin.id, action="USER_UPDATED", affected_table="users", affected_id=u.id,
              details={k: str(v) for k, v in changes.items()})
    return _out(u)
