"""
Machine à états des transferts entre locaux.

    PENDING ──► APPROVED ──► IN_TRANSIT ──► COMPLETED
       │            │
       └────────────┴──► CANCELLED

- création : réservation à l'origine (quantity_reserved), aucune ligne ledger
- complétion : commit_transfer (TRANSFER_OUT / TRANSFER_IN appariés)
- annulation : libération des réservations, aucune ligne ledger
"""

from __future__ import annotations

import logging
from collections import defaultdict

from sqlalchemy import select, or_
from sqlalchemy.orm import Session, aliased

from backend.app.core.config import settings
from backend.app.core.errors import InvalidStateError, NotFoundError, ValidationError
from backend.app.db.base import utcnow
from backend.app.db.models.models_v1 import Location, Transfer, TransferItem
from backend.app.db.models.core_types import TransferStatus
from backend.app.schemas.transfers import CancelTransferRequest, CreateTransferRequest
from backend.services.actors import require_role
from backend.services.audit import log_audit
from backend.services.codes import TRANSFER_PREFIX, generate_code
from backend.services.inventory import (
    commit_transfer,
    insufficient_stock,
    lock_products,
    lock_stock_levels,
    release_reservation,
    require_location,
    reserve_for_transfer,
)
from backend.services.uow import atomic

logger = logging.getLogger(__name__)

CANCEL_DEFAULT_REASON = "Manual cancellation"

CANCELLABLE_STATUSES = {TransferStatus.pending, TransferStatus.approved}
COMPLETABLE_STATUSES = {TransferStatus.approved, TransferStatus.in_transit}


def _lock_transfer(db: Session, transfer_id: int) -> Transfer:
    transfer = (
        db.execute(
            select(Transfer)
            .where(Transfer.id == transfer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if transfer is None:
        raise NotFoundError(f"Transfer not found (id={transfer_id})")
    return transfer


def _require_status(transfer: Transfer, allowed: set[TransferStatus], action: str) -> None:
    if transfer.status not in allowed:
        raise InvalidStateError(f"Cannot {action} transfer {transfer.code} in status {transfer.status.value}")


def _audit(db: Session, actor_id: int, action: str, transfer_id: int, **details) -> None:
    log_audit(
        db,
        actor_id=actor_id,
        action=action,
        affected_table="transfers",
        affected_id=transfer_id,
        details=details or None,
    )


def create_transfer(db: Session, payload: CreateTransferRequest, *, actor_id: int) -> Transfer:
    if payload.source_location_id == payload.destination_location_id:
        raise ValidationError("Source and destination locations must differ")

    with atomic(db):
        require_location(db, payload.source_location_id)
        require_location(db, payload.destination_location_id)

        demand: dict[int, int] = defaultdict(int)
        for it in payload.items:
            demand[it.product_id] += it.quantity

        products = lock_products(db, demand.keys())
        for p in products.values():
            if not p.active:
                raise NotFoundError(f"Product {p.code} is inactive")

        src = payload.source_location_id
        levels = lock_stock_levels(db, [(pid, src) for pid in demand])
        for pid, qty in sorted(demand.items()):
            sl = levels.get((pid, src))
            available = sl.available if sl else 0
            if available < qty:
                raise insufficient_stock(products[pid], qty, available)

        transfer = Transfer(
            code=generate_code(TRANSFER_PREFIX),
            source_location_id=src,
            destination_location_id=payload.destination_location_id,
            requested_by=actor_id,
            status=TransferStatus.pending,
            note=payload.note,
        )
        # une ligne par produit (lignes répétées fusionnées)
        for pid, qty in sorted(demand.items()):
            transfer.items.append(
                TransferItem(
                    product_id=pid,
                    quantity_requested=qty,
                    quantity_sent=0,
                    quantity_received=0,
                )
            )
        db.add(transfer)
        db.flush()

        for item in transfer.items:
            reserve_for_transfer(db, product_id=item.product_id, location_id=src, quantity=item.quantity_requested)

        transfer_id = int(transfer.id)
        transfer_code = transfer.code

    logger.info("Transfer %s created (%s -> %s)", transfer_code, src, payload.destination_location_id)
    _audit(db, actor_id, "TRANSFER_CREATED", transfer_id, code=transfer_code, items=dict(demand))
    return transfer


def approve_transfer(db: Session, transfer_id: int, *, actor_id: int) -> Transfer:
    with atomic(db):
        require_role(db, actor_id, settings.APPROVER_ROLES)
        transfer = _lock_transfer(db, transfer_id)
        _require_status(transfer, {TransferStatus.pending}, "approve")

        transfer.status = TransferStatus.approved
        transfer.approved_by = actor_id
        transfer.approved_at = utcnow()
        db.flush()
        transfer_code = transfer.code

    logger.info("Transfer %s approved by user %s", transfer_code, actor_id)
    _audit(db, actor_id, "TRANSFER_APPROVED", transfer_id)
    return transfer


def dispatch_transfer(db: Session, transfer_id: int, *, actor_id: int) -> Transfer:
    """APPROVED -> IN_TRANSIT. Aucun mouvement de stock (la réservation tient)."""
    with atomic(db):
        transfer = _lock_transfer(db, transfer_id)
        _require_status(transfer, {TransferStatus.approved}, "dispatch")

        for item in transfer.items:
            item.quantity_sent = item.quantity_requested
        transfer.status = TransferStatus.in_transit
        transfer.dispatched_at = utcnow()
        db.flush()
        transfer_code = transfer.code

    logger.info("Transfer %s dispatched", transfer_code)
    _audit(db, actor_id, "TRANSFER_DISPATCHED", transfer_id)
    return transfer


def complete_transfer(db: Session, transfer_id: int, *, actor_id: int) -> Transfer:
    # TODO: réception partielle (quantity_received < quantity_sent) ; aujourd'hui envoi complet uniquement
    with atomic(db):
        transfer = _lock_transfer(db, transfer_id)
        _require_status(transfer, COMPLETABLE_STATUSES, "complete")

        lock_products(db, [it.product_id for it in transfer.items])
        for item in transfer.items:
            commit_transfer(
                db,
                product_id=item.product_id,
                source_location_id=transfer.source_location_id,
                destination_location_id=transfer.destination_location_id,
                quantity=item.quantity_requested,
                actor_id=actor_id,
                document_id=int(transfer.id),
                reference=transfer.code,
            )
            item.quantity_sent = item.quantity_requested
            item.quantity_received = item.quantity_requested

        transfer.status = TransferStatus.completed
        transfer.completed_at = utcnow()
        db.flush()
        transfer_code = transfer.code

    logger.info("Transfer %s completed", transfer_code)
    _audit(db, actor_id, "TRANSFER_COMPLETED", transfer_id)
    return transfer


def cancel_transfer(
    db: Session,
    transfer_id: int,
    payload: CancelTransferRequest | None = None,
    *,
    actor_id: int,
) -> Transfer:
    reason = (payload.reason if payload else None) or CANCEL_DEFAULT_REASON

    with atomic(db):
        transfer = _lock_transfer(db, transfer_id)
        _require_status(transfer, CANCELLABLE_STATUSES, "cancel")

        lock_products(db, [it.product_id for it in transfer.items])
        for item in transfer.items:
            release_reservation(
                db,
                product_id=item.product_id,
                location_id=transfer.source_location_id,
                quantity=item.quantity_requested,
            )

        transfer.status = TransferStatus.cancelled
        transfer.cancel_reason = reason
        db.flush()
        transfer_code = transfer.code

    logger.info("Transfer %s cancelled: %s", transfer_code, reason)
    _audit(db, actor_id, "TRANSFER_CANCELLED", transfer_id, reason=reason)
    return transfer


def get_transfer(db: Session, transfer_id: int) -> Transfer:
    transfer = db.get(Transfer, transfer_id)
    if transfer is None:
        raise NotFoundError(f"Transfer not found (id={transfer_id})")
    return transfer


def list_transfers(
    db: Session,
    *,
    status: TransferStatus | None = None,
    location_id: int | None = None,
    search: str | None = None,
    limit: int = 200,
) -> list[Transfer]:
    src = aliased(Location)
    dst = aliased(Location)
    stmt = (
        select(Transfer)
        .join(src, src.id == Transfer.source_location_id)
        .join(dst, dst.id == Transfer.destination_location_id)
        .order_by(Transfer.requested_at.desc(), Transfer.id.desc())
        .limit(limit)
    )
    if status is not None:
        stmt = stmt.where(Transfer.status == status)
    if location_id is not None:
        stmt = stmt.where(
            or_(
                Transfer.source_location_id == location_id,
                Transfer.destination_location_id == location_id,
            )
        )
    if search:
        like = f"%{search}%"
        stmt = stmt.where(or_(Transfer.code.ilike(like), src.name.ilike(like), dst.name.ilike(like)))
    return list(db.execute(stmt).scalars().all())
