"""
Agrégations de reporting. LECTURE SEULE : aucune fonction ici n'écrit.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select, func, and_, or_, distinct
from sqlalchemy.orm import Session

from backend.app.db.base import utcnow
from backend.app.db.models.models_v1 import (
    Location,
    Loan,
    LoanItem,
    Product,
    StockLevel,
    StockMovement,
    Transfer,
)
from backend.app.db.models.core_types import LOAN_ACTIVE_STATUSES, LoanStatus, TransferStatus
from backend.services.inventory import check_consistency
from backend.services.loans import OVERDUE_SOURCE_STATUSES

ATTENTION_FACTOR = Decimal("1.5")


def day_start(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def apply_period(stmt, column, start: date | None, end: date | None):
    # bornes inclusives en jours : [start 00:00, end+1 00:00[
    if start is not None:
        stmt = stmt.where(column >= day_start(start))
    if end is not None:
        stmt = stmt.where(column < day_start(end + timedelta(days=1)))
    return stmt


def stock_status(current: int, minimum: int) -> str:
    if current <= minimum:
        return "CRITICAL"
    if current <= minimum * ATTENTION_FACTOR:
        return "ATTENTION"
    return "NORMAL"


def stock_position(db: Session, *, group_id: int | None = None) -> list[dict]:
    stmt = select(Product).where(Product.active.is_(True)).order_by(Product.code)
    if group_id is not None:
        stmt = stmt.where(Product.group_id == group_id)

    return [
        {
            "product_id": p.id,
            "code": p.code,
            "description": p.description,
            "unit": p.unit,
            "stock_current": p.stock_current,
            "stock_requested": p.stock_requested,
            "stock_minimum": p.stock_minimum,
            "stock_maximum": p.stock_maximum,
            "cost_price": p.cost_price,
            "total_value": Decimal(p.stock_current) * Decimal(p.cost_price),
            "status": stock_status(p.stock_current, p.stock_minimum),
        }
        for p in db.execute(stmt).scalars().all()
    ]


def low_stock(db: Session) -> list[Product]:
    stmt = (
        select(Product)
        .where(Product.active.is_(True))
        .where(Product.stock_minimum > 0)
        .where(Product.stock_current <= Product.stock_minimum)
        .order_by(Product.stock_current.asc(), Product.code)
    )
    return list(db.execute(stmt).scalars().all())


def stockouts(db: Session) -> list[dict]:
    """Produits sous le minimum, avec la quantité manquante."""
    stmt = (
        select(Product)
        .where(Product.active.is_(True))
        .where(Product.stock_current < Product.stock_minimum)
        .order_by((Product.stock_minimum - Product.stock_current).desc(), Product.code)
    )
    return [
        {
            "product_id": p.id,
            "code": p.code,
            "description": p.description,
            "stock_current": p.stock_current,
            "stock_minimum": p.stock_minimum,
            "missing": p.stock_minimum - p.stock_current,
        }
        for p in db.execute(stmt).scalars().all()
    ]


def movements_by_period(db: Session, *, start: date | None = None, end: date | None = None) -> list[dict]:
    stmt = select(
        StockMovement.kind,
        func.count(StockMovement.id),
        func.coalesce(func.sum(StockMovement.quantity), 0),
    ).group_by(StockMovement.kind)
    stmt = apply_period(stmt, StockMovement.created_at, start, end)

    rows = db.execute(stmt).all()
    return sorted(
        (
            {"kind": kind, "movements": int(count), "quantity": int(qty)}
            for kind, count, qty in rows
        ),
        key=lambda r: r["kind"].value,
    )


def loans_by_status(
    db: Session,
    *,
    start: date | None = None,
    end: date | None = None,
    now: datetime | None = None,
) -> list[dict]:
    """
    Regroupement par statut EFFECTIF : un prêt échu pas encore basculé
    compte en OVERDUE, comme dans dashboard(). Aucune écriture.
    """
    today = (now or utcnow()).date()
    stmt = (
        select(
            Loan.id,
            Loan.status,
            Loan.due_date,
            Loan.collaborator_id,
            func.coalesce(func.sum(LoanItem.quantity_issued), 0),
            func.coalesce(func.sum(LoanItem.quantity_returned), 0),
            func.coalesce(func.sum(LoanItem.quantity_lost), 0),
        )
        .join(LoanItem, LoanItem.loan_id == Loan.id)
        .group_by(Loan.id, Loan.status, Loan.due_date, Loan.collaborator_id)
    )
    stmt = apply_period(stmt, Loan.issued_at, start, end)

    buckets: dict[LoanStatus, dict] = {}
    for _, status, due_date, collaborator_id, issued, returned, lost in db.execute(stmt).all():
        if status in OVERDUE_SOURCE_STATUSES and due_date < today:
            status = LoanStatus.overdue
        b = buckets.setdefault(
            status,
            {"loans": 0, "collaborators": set(), "quantity_issued": 0, "quantity_returned": 0, "quantity_lost": 0},
        )
        b["loans"] += 1
        b["collaborators"].add(collaborator_id)
        b["quantity_issued"] += int(issued)
        b["quantity_returned"] += int(returned)
        b["quantity_lost"] += int(lost)

    return [
        {
            "status": status,
            "loans": b["loans"],
            "collaborators": len(b["collaborators"]),
            "quantity_issued": b["quantity_issued"],
            "quantity_returned": b["quantity_returned"],
            "quantity_lost": b["quantity_lost"],
        }
        for status, b in sorted(buckets.items(), key=lambda kv: kv[0].value)
    ]


def transfers_by_status(db: Session, *, start: date | None = None, end: date | None = None) -> list[dict]:
    stmt = select(
        Transfer.status,
        func.count(Transfer.id),
        func.count(distinct(Transfer.source_location_id)),
        func.count(distinct(Transfer.destination_location_id)),
    ).group_by(Transfer.status)
    stmt = apply_period(stmt, Transfer.requested_at, start, end)

    return sorted(
        (
            {"status": status, "transfers": int(n), "origins": int(o), "destinations": int(d)}
            for status, n, o, d in db.execute(stmt).all()
        ),
        key=lambda r: r["status"].value,
    )


def location_summary(db: Session) -> list[dict]:
    stmt = (
        select(
            Location.id,
            Location.code,
            Location.name,
            func.count(StockLevel.product_id).filter(StockLevel.quantity > 0),
            func.coalesce(func.sum(StockLevel.quantity), 0),
            func.coalesce(func.sum(StockLevel.quantity * Product.cost_price), 0),
        )
        .select_from(Location)
        .outerjoin(StockLevel, StockLevel.location_id == Location.id)
        .outerjoin(Product, Product.id == StockLevel.product_id)
        .where(Location.active.is_(True))
        .group_by(Location.id, Location.code, Location.name)
        .order_by(Location.code)
    )
    return [
        {
            "location_id": lid,
            "code": code,
            "name": name,
            "products": int(products or 0),
            "quantity": int(qty),
            "value": Decimal(str(value)),
        }
        for lid, code, name, products, qty, value in db.execute(stmt).all()
    ]


def dashboard(db: Session, *, now: datetime | None = None) -> dict:
    now = now or utcnow()
    today = now.date()

    def scalar(stmt) -> int:
        return int(db.execute(stmt).scalar_one() or 0)

    return {
        "products_active": scalar(select(func.count(Product.id)).where(Product.active.is_(True))),
        "products_low_stock": scalar(
            select(func.count(Product.id))
            .where(Product.active.is_(True))
            .where(Product.stock_minimum > 0)
            .where(Product.stock_current <= Product.stock_minimum)
        ),
        "loans_active": scalar(select(func.count(Loan.id)).where(Loan.status.in_(LOAN_ACTIVE_STATUSES))),
        # statut effectif : échus non encore persistés inclus
        "loans_overdue": scalar(
            select(func.count(Loan.id)).where(
                or_(
                    Loan.status == LoanStatus.overdue,
                    and_(
                        Loan.status.in_((LoanStatus.open, LoanStatus.partially_returned)),
                        Loan.due_date < today,
                    ),
                )
            )
        ),
        "transfers_pending": scalar(
            select(func.count(Transfer.id)).where(
                Transfer.status.in_((TransferStatus.pending, TransferStatus.approved, TransferStatus.in_transit))
            )
        ),
        "movements_today": scalar(
            select(func.count(StockMovement.id)).where(StockMovement.created_at >= day_start(today))
        ),
    }


def consistency(db: Session) -> list[dict]:
    """Produits dont le cache ne correspond pas au ledger ou à la somme des locaux."""
    return [row for row in check_consistency(db) if not (row["ledger_ok"] and row["levels_ok"])]
