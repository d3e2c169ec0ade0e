from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db, require_writer
from backend.app.db.models.models_v1 import User
from backend.app.db.models.core_types import LoanStatus
from backend.app.schemas.loans import CreateLoanRequest, LoanRead, MarkLostRequest, ReturnItemsRequest
from backend.services import loans as loan_service
from backend.services.uow import retry_on_conflict

router = APIRouter(prefix="/loans")


@router.get("", response_model=list[LoanRead])
def list_loans(
    status: LoanStatus | None = None,
    collaborator_id: int | None = None,
    search: str | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    return loan_service.list_loans(db, status=status, collaborator_id=collaborator_id, search=search)


@router.get("/due-soon", response_model=list[LoanRead])
def due_soon(days: int | None = None, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return loan_service.loans_due_soon(db, days=days)


@router.get("/{loan_id}", response_model=LoanRead)
def get_loan(loan_id: int, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return loan_service.get_loan(db, loan_id)


@router.post("", response_model=LoanRead, status_code=201)
def create_loan(payload: CreateLoanRequest, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    return retry_on_conflict(loan_service.create_loan, db, payload, actor_id=user.id)


@router.post("/{loan_id}/return", response_model=LoanRead)
def return_items(
    loan_id: int,
    payload: ReturnItemsRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_writer),
):
    return retry_on_conflict(loan_service.return_items, db, loan_id, payload, actor_id=user.id)


@router.post("/{loan_id}/lost", response_model=LoanRead)
def mark_lost(
    loan_id: int,
    payload: MarkLostRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_writer),
):
    return retry_on_conflict(loan_service.mark_lost, db, loan_id, payload, actor_id=user.id)
