from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db, require_writer
from backend.app.core.errors import ValidationError
from backend.app.db.models.models_v1 import Collaborator, Loan, User
from backend.app.db.models.core_types import LOAN_ACTIVE_STATUSES
from backend.services.audit import log_audit

router = APIRouter(prefix="/collaborators")


class CollaboratorCreate(BaseModel):
    registration: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1, max_length=200)
    department: str | None = Field(default=None, max_length=120)
    manager: str | None = Field(default=None, max_length=200)


class CollaboratorUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    department: str | None = Field(default=None, max_length=120)
    manager: str | None = Field(default=None, max_length=200)
    active: bool | None = None


def _out(c: Collaborator) -> dict:
    return {
        "id": c.id,
        "registration": c.registration,
        "name": c.name,
        "department": c.department,
        "manager": c.manager,
        "active": c.active,
    }


@router.get("")
def list_collaborators(
    search: str | None = None,
    active: bool | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    stmt = select(Collaborator).order_by(Collaborator.name)
    if search:
        like = f"%{search}%"
        stmt = stmt.where(or_(Collaborator.name.ilike(like), Collaborator.registration.ilike(like)))
    if active is not None:
        stmt = stmt.where(Collaborator.active.is_(active))
    return [_out(c) for c in db.execute(stmt).scalars().all()]


@router.post("", status_code=201)
def create_collaborator(
    payload: CollaboratorCreate,
    db: Session = Depends(get_db),
    user: User = Depends(require_writer),
):
    exists = db.execute(
        select(Collaborator).where(Collaborator.registration == payload.registration)
    ).scalar_one_or_none()
    if exists:
        raise HTTPException(status_code=409, detail="Registration already exists")

    c = Collaborator(**payload.model_dump(), active=True)
    db.add(c)
    db.commit()
    db.refresh(c)

    log_audit(db, actor_id=user.id, action="COLLABORATOR_CREATED", affected_table="collaborators", affected_id=c.id)
    return _out(c)


@router.patch("/{collaborator_id}")
def update_collaborator(
    collaborator_id: int,
    payload: CollaboratorUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(require_writer),
):
    c = db.get(Collaborator, collaborator_id)
    if not c:
        raise HTTPException(status_code=404, detail="Collaborator not found")

    changes = payload.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(c, field, value)
    db.commit()
    db.refresh(c)

    log_audit(db, actor_id=user.id, action="COLLABORATOR_UPDATED", affected_table="collaborators",
              affected_id=c.id, details=changes)
    return _out(c)


@router.delete("/{collaborator_id}")
def delete_collaborator(collaborator_id: int, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    """
    - prêt en cours : refus
    - historique de prêts : désactivation
    - aucun prêt : suppression physique
    """
    c = db.get(Collaborator, collaborator_id)
    if not c:
        raise HTTPException(status_code=404, detail="Collaborator not found")

    loans_stmt = select(Loan.id).where(Loan.collaborator_id == collaborator_id).limit(1)
    if db.execute(loans_stmt.where(Loan.status.in_(LOAN_ACTIVE_STATUSES))).first() is not None:
        raise ValidationError("Collaborator has unfinished loans")

    has_history = db.execute(loans_stmt).first() is not None
    if has_history:
        c.active = False
    else:
        db.delete(c)
    db.commit()

    log_audit(db, actor_id=user.id, action="COLLABORATOR_DELETED", affected_table="collaborators",
              affected_id=collaborator_id, details={"soft": has_history})
    return {"id": collaborator_id, "deleted": not has_history, "deactivated": has_history}
