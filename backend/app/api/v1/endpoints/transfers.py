from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db, require_writer
from backend.app.db.models.models_v1 import User
from backend.app.db.models.core_types import TransferStatus
from backend.app.schemas.transfers import CancelTransferRequest, CreateTransferRequest, TransferRead
from backend.services import transfers as transfer_service
from backend.services.uow import retry_on_conflict

router = APIRouter(prefix="/transfers")


@router.get("", response_model=list[TransferRead])
def list_transfers(
    status: TransferStatus | None = None,
    location_id: int | None = None,
    search: str | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    return transfer_service.list_transfers(db, status=status, location_id=location_id, search=search)


@router.get("/{transfer_id}", response_model=TransferRead)
def get_transfer(transfer_id: int, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return transfer_service.get_transfer(db, transfer_id)


@router.post("", response_model=TransferRead, status_code=201)
def create_transfer(
    payload: CreateTransferRequest,
    db: Session = Depends(get_db),
    user: User = Depends(require_writer),
):
    return retry_on_conflict(transfer_service.create_transfer, db, payload, actor_id=user.id)


@router.post("/{transfer_id}/approve", response_model=TransferRead)
def approve_transfer(transfer_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    # rôle approbateur vérifié par le service (APPROVER_ROLES)
    return retry_on_conflict(transfer_service.approve_transfer, db, transfer_id, actor_id=user.id)


@router.post("/{transfer_id}/dispatch", response_model=TransferRead)
def dispatch_transfer(transfer_id: int, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    return retry_on_conflict(transfer_service.dispatch_transfer, db, transfer_id, actor_id=user.id)


@router.post("/{transfer_id}/complete", response_model=TransferRead)
def complete_transfer(transfer_id: int, db: Session = Depends(get_db), user: User = Depends(require_writer)):
    return retry_on_conflict(transfer_service.complete_transfer, db, transfer_id, actor_id=user.id)


@router.post("/{transfer_id}/cancel", response_model=TransferRead)
def cancel_transfer(
    transfer_id: int,
    payload: CancelTransferRequest | None = None,
    db: Session = Depends(get_db),
    user: User = Depends(require_writer),
):
    return retry_on_conflict(transfer_service.cancel_transfer, db, transfer_id, payload, actor_id=user.id)
