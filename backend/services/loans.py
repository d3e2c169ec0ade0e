"""
Machine à états des prêts (empréstimos).

    OPEN ──► PARTIALLY_RETURNED ──► RETURNED
      │              │
      └──────────────┴──────────► LOST

OVERDUE = observation persistée d'un prêt OPEN / PARTIALLY_RETURNED dont la
date d'échéance est dépassée ; il se comporte comme eux.
RETURNED et LOST sont terminaux.

Toute écriture de stock passe par backend.services.inventory.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta

from sqlalchemy import select, update, or_
from sqlalchemy.orm import Session

from backend.app.core.config import settings
from backend.app.core.errors import InvalidStateError, NotFoundError, ValidationError
from backend.app.db.base import utcnow
from backend.app.db.models.models_v1 import Collaborator, Loan, LoanItem, User
from backend.app.db.models.core_types import (
    LOAN_ACTIVE_STATUSES,
    LOAN_TERMINAL_STATUSES,
    LoanStatus,
)
from backend.app.schemas.loans import CreateLoanRequest, MarkLostRequest, ReturnItemsRequest
from backend.services.actors import require_role
from backend.services.audit import log_audit
from backend.services.codes import LOAN_PREFIX, generate_code
from backend.services.inventory import (
    insufficient_stock,
    issue_for_loan,
    lock_products,
    lock_stock_levels,
    require_location,
    return_from_loan,
    write_off_loan,
)
from backend.services.uow import atomic

logger = logging.getLogger(__name__)

LOST_DEFAULT_NOTE = "Marked as lost"
OVERDUE_SOURCE_STATUSES = (LoanStatus.open, LoanStatus.partially_returned)


def _lock_loan(db: Session, loan_id: int) -> Loan:
    loan = (
        db.execute(
            select(Loan)
            .where(Loan.id == loan_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )
    if loan is None:
        raise NotFoundError(f"Loan not found (id={loan_id})")
    return loan


def _return_reference(loan: Loan) -> str:
    return f"DEV-{loan.id}"


# ---------- STATUT EFFECTIF ----------
def compute_effective_status(loan: Loan, now: datetime) -> LoanStatus:
    """Pure : aucune écriture."""
    if loan.status in OVERDUE_SOURCE_STATUSES and now.date() > loan.due_date:
        return LoanStatus.overdue
    return loan.status


def mark_overdue(loan: Loan, now: datetime) -> bool:
    """Persiste OVERDUE sur l'objet si nécessaire. Idempotent. Ne flush pas."""
    effective = compute_effective_status(loan, now)
    if effective == loan.status:
        return False
    loan.status = effective
    return True


def refresh_overdue(db: Session, now: datetime | None = None) -> int:
    """Bascule en OVERDUE tous les prêts échus. Ne commit pas."""
    today = (now or utcnow()).date()
    result = db.execute(
        update(Loan)
        .where(Loan.status.in_(OVERDUE_SOURCE_STATUSES))
        .where(Loan.due_date < today)
        .values(status=LoanStatus.overdue)
    )
    return int(result.rowcount or 0)


# ---------- CRÉATION ----------
def create_loan(db: Session, payload: CreateLoanRequest, *, actor_id: int) -> Loan:
    """
    All-or-nothing : toutes les lignes sont validées (disponibilité cumulée
    par produit / local) AVANT la première écriture.
    """
    with atomic(db):
        collaborator = db.get(Collaborator, payload.collaborator_id)
        if collaborator is None or not collaborator.active:
            raise NotFoundError(f"Collaborator not found (id={payload.collaborator_id})")

        if payload.due_date < utcnow().date():
            raise ValidationError("Due date cannot be in the past")

        if payload.authorized_by is not None and db.get(User, payload.authorized_by) is None:
            raise NotFoundError(f"User not found (id={payload.authorized_by})")

        products = lock_products(db, [it.product_id for it in payload.items])
        for p in products.values():
            if not p.active:
                raise NotFoundError(f"Product {p.code} is inactive")

        per_location: dict[tuple[int, int], int] = defaultdict(int)
        per_product: dict[int, int] = defaultdict(int)
        for it in payload.items:
            if it.location_id is not None:
                per_location[(it.product_id, it.location_id)] += it.quantity
            per_product[it.product_id] += it.quantity

        for lid in sorted({lid for _, lid in per_location}):
            require_location(db, lid)

        levels = lock_stock_levels(db, per_location.keys())
        for (pid, lid), qty in sorted(per_location.items()):
            sl = levels.get((pid, lid))
            available = sl.available if sl else 0
            if available < qty:
                raise insufficient_stock(products[pid], qty, available)

        for pid, qty in sorted(per_product.items()):
            if products[pid].stock_current < qty:
                raise insufficient_stock(products[pid], qty, products[pid].stock_current)

        loan = Loan(
            code=generate_code(LOAN_PREFIX),
            collaborator_id=payload.collaborator_id,
            requested_by=actor_id,
            authorized_by=payload.authorized_by,
            due_date=payload.due_date,
            status=LoanStatus.open,
            note=payload.note,
            responsibility_term=payload.responsibility_term,
        )
        for it in payload.items:
            loan.items.append(
                LoanItem(
                    product_id=it.product_id,
                    source_location_id=it.location_id,
                    quantity_issued=it.quantity,
                    quantity_returned=0,
                    quantity_lost=0,
                    condition_out=it.condition,
                    note_out=it.note,
                )
            )
        db.add(loan)
        db.flush()

        for item in loan.items:
            issue_for_loan(
                db,
                product_id=item.product_id,
                location_id=item.source_location_id,
                quantity=item.quantity_issued,
                actor_id=actor_id,
                document_id=int(loan.id),
                reference=loan.code,
            )

        loan_id = int(loan.id)
        loan_code = loan.code

    logger.info("Loan %s created for collaborator %s", loan_code, payload.collaborator_id)
    log_audit(
        db,
        actor_id=actor_id,
        action="LOAN_CREATED",
        affected_table="loans",
        affected_id=loan_id,
        details={
            "code": loan_code,
            "collaborator_id": payload.collaborator_id,
            "items": [{"product_id": it.product_id, "quantity": it.quantity} for it in payload.items],
        },
    )
    return loan


# ---------- RETOUR ----------
def return_items(db: Session, loan_id: int, payload: ReturnItemsRequest, *, actor_id: int) -> Loan:
    with atomic(db):
        loan = _lock_loan(db, loan_id)
        if loan.status in LOAN_TERMINAL_STATUSES:
            raise InvalidStateError(f"Loan {loan.code} is {loan.status.value}, cannot return items")

        items_by_id = {int(it.id): it for it in loan.items}
        requested: dict[int, int] = defaultdict(int)
        for entry in payload.items:
            if entry.item_id not in items_by_id:
                raise NotFoundError(f"Item {entry.item_id} does not belong to loan {loan.code}")
            requested[entry.item_id] += entry.quantity

        for item_id, qty in requested.items():
            item = items_by_id[item_id]
            if qty > item.quantity_pending:
                raise ValidationError(
                    f"Return quantity exceeds pending for item {item_id} "
                    f"(requested={qty}, pending={item.quantity_pending})"
                )

        lock_products(db, [items_by_id[i].product_id for i in requested])

        now = utcnow()
        reference = _return_reference(loan)
        for entry in payload.items:
            item = items_by_id[entry.item_id]
            return_from_loan(
                db,
                product_id=item.product_id,
                location_id=item.source_location_id,
                quantity=entry.quantity,
                actor_id=actor_id,
                document_id=int(loan.id),
                reference=reference,
            )
            item.quantity_returned += entry.quantity
            item.condition_in = entry.condition
            item.note_in = entry.note
            if item.quantity_pending == 0:
                item.returned_at = now

        pending = sum(it.quantity_pending for it in loan.items)
        if pending == 0:
            loan.status = LoanStatus.returned
            loan.returned_at = now
        else:
            loan.status = LoanStatus.partially_returned
            mark_overdue(loan, now)
        db.flush()

        loan_code = loan.code
        new_status = loan.status

    logger.info("Loan %s returned items, status=%s", loan_code, new_status.value)
    log_audit(
        db,
        actor_id=actor_id,
        action="LOAN_RETURNED",
        affected_table="loans",
        affected_id=loan_id,
        details={
            "status": new_status.value,
            "items": [{"item_id": e.item_id, "quantity": e.quantity} for e in payload.items],
        },
    )
    return loan


# ---------- PERTE ----------
def mark_lost(db: Session, loan_id: int, payload: MarkLostRequest, *, actor_id: int) -> Loan:
    """
    Passe le prêt en LOST. Les quantités encore dehors sont sorties de
    stock_requested (write-off) ; stock_current n'est pas touché.
    """
    with atomic(db):
        require_role(db, actor_id, settings.APPROVER_ROLES)
        loan = _lock_loan(db, loan_id)
        if loan.status in LOAN_TERMINAL_STATUSES:
            raise InvalidStateError(f"Loan {loan.code} is already {loan.status.value}")

        pending_items = [it for it in loan.items if it.quantity_pending > 0]
        lock_products(db, [it.product_id for it in pending_items])

        written_off = 0
        for item in pending_items:
            pending = item.quantity_pending
            write_off_loan(db, product_id=item.product_id, quantity=pending)
            item.quantity_lost += pending
            written_off += pending

        text = payload.note or LOST_DEFAULT_NOTE
        loan.note = f"{loan.note}\n{text}" if loan.note else text
        loan.status = LoanStatus.lost
        db.flush()
        loan_code = loan.code

    logger.info("Loan %s marked as lost (%d units written off)", loan_code, written_off)
    log_audit(
        db,
        actor_id=actor_id,
        action="LOAN_LOST",
        affected_table="loans",
        affected_id=loan_id,
        details={"written_off": written_off, "note": payload.note},
    )
    return loan


# ---------- LECTURES ----------
def get_loan(db: Session, loan_id: int, *, now: datetime | None = None) -> Loan:
    with atomic(db):
        loan = db.get(Loan, loan_id)
        if loan is None:
            raise NotFoundError(f"Loan not found (id={loan_id})")
        if mark_overdue(loan, now or utcnow()):
            db.flush()
    return loan


def list_loans(
    db: Session,
    *,
    status: LoanStatus | None = None,
    collaborator_id: int | None = None,
    search: str | None = None,
    now: datetime | None = None,
    limit: int = 200,
) -> list[Loan]:
    with atomic(db):
        refresh_overdue(db, now)

    stmt = (
        select(Loan)
        .join(Collaborator, Collaborator.id == Loan.collaborator_id)
        .order_by(Loan.issued_at.desc(), Loan.id.desc())
        .limit(limit)
    )
    if status is not None:
        stmt = stmt.where(Loan.status == status)
    if collaborator_id is not None:
        stmt = stmt.where(Loan.collaborator_id == collaborator_id)
    if search:
        like = f"%{search}%"
        stmt = stmt.where(
            or_(
                Loan.code.ilike(like),
                Collaborator.name.ilike(like),
                Collaborator.registration.ilike(like),
            )
        )
    return list(db.execute(stmt).scalars().all())


def loans_due_soon(
    db: Session,
    *,
    days: int | None = None,
    now: datetime | None = None,
    limit: int = 10,
) -> list[Loan]:
    """Prêts actifs dont l'échéance tombe dans les `days` prochains jours (échus inclus)."""
    now = now or utcnow()
    with atomic(db):
        refresh_overdue(db, now)

    horizon = now.date() + timedelta(days=settings.LOAN_DUE_SOON_DAYS if days is None else days)
    stmt = (
        select(Loan)
        .where(Loan.status.in_(LOAN_ACTIVE_STATUSES))
        .where(Loan.due_date <= horizon)
        .order_by(Loan.due_date.asc(), Loan.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())
