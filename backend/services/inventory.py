"""
Moteur de mutation de stock.

SEUL module autorisé à écrire :
    - Product.stock_current / Product.stock_requested
    - StockLevel.quantity / StockLevel.quantity_reserved
    - stock_movements (ledger append-only)

Règles :
- les primitives tournent dans la transaction de l'appelant (flush, jamais commit)
- chaque ligne touchée est verrouillée (SELECT ... FOR UPDATE)
- ordre de verrouillage : produits par id, puis stock_levels par (product_id, location_id)
- toute violation d'invariant lève une StockError, rien n'est "corrigé" en silence
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from backend.app.core.errors import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from backend.app.db.models.models_v1 import (
    Location,
    Product,
    StockEntry,
    StockEntryItem,
    StockLevel,
    StockMovement,
    Supplier,
)
from backend.app.db.models.core_types import EntryStatus, MovementKind
from backend.app.schemas.stock import AdjustStockRequest, CreateEntryRequest, ReceiveStockRequest
from backend.services.audit import log_audit
from backend.services.codes import ENTRY_PREFIX, generate_code
from backend.services.uow import atomic

logger = logging.getLogger(__name__)


# ---------- VERROUS ----------
def lock_products(db: Session, product_ids: Iterable[int]) -> dict[int, Product]:
    """
    Verrouille les produits en ordre croissant d'id.
    Lève NotFoundError si un id n'existe pas.
    """
    ids = sorted({int(pid) for pid in product_ids})
    if not ids:
        return {}

    rows = (
        db.execute(
            select(Product)
            .where(Product.id.in_(ids))
            .order_by(Product.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalars()
        .all()
    )
    found = {int(p.id): p for p in rows}
    missing = [pid for pid in ids if pid not in found]
    if missing:
        raise NotFoundError(f"Product not found (id={missing[0]})")
    return found


def _lock_product(db: Session, product_id: int) -> Product:
    return lock_products(db, [product_id])[int(product_id)]


def _lock_stock_level(
    db: Session,
    product_id: int,
    location_id: int,
    *,
    create: bool = False,
) -> StockLevel | None:
    sl = (
        db.execute(
            select(StockLevel)
            .where(StockLevel.product_id == product_id)
            .where(StockLevel.location_id == location_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        .scalar_one_or_none()
    )

    if sl is None and create:
        sl = StockLevel(
            product_id=product_id,
            location_id=location_id,
            quantity=0,
            quantity_reserved=0,
        )
        db.add(sl)
        db.flush()

    return sl


def lock_stock_levels(db: Session, pairs: Iterable[tuple[int, int]]) -> dict[tuple[int, int], StockLevel]:
    """Verrouille les stock_levels existants en ordre (product_id, location_id)."""
    locked: dict[tuple[int, int], StockLevel] = {}
    for pid, lid in sorted({(int(p), int(l)) for p, l in pairs}):
        sl = _lock_stock_level(db, pid, lid)
        if sl is not None:
            locked[(pid, lid)] = sl
    return locked


def require_location(db: Session, location_id: int, *, active: bool = True) -> Location:
    loc = db.get(Location, location_id)
    if loc is None or (active and not loc.active):
        raise NotFoundError(f"Location not found (id={location_id})")
    return loc


def _require_quantity(quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"Quantity must be a positive integer (got {quantity!r})")
    return quantity


def _append_movement(
    db: Session,
    *,
    product_id: int,
    location_id: int | None,
    kind: MovementKind,
    quantity: int,
    actor_id: int,
    document_id: int | None = None,
    reference: str | None = None,
) -> StockMovement:
    mv = StockMovement(
        product_id=product_id,
        location_id=location_id,
        kind=kind,
        quantity=quantity,
        user_id=actor_id,
        document_id=document_id,
        reference=reference,
    )
    db.add(mv)
    return mv


def insufficient_stock(product: Product, requested: int, available: int) -> InsufficientStockError:
    return InsufficientStockError(
        f"Insufficient stock for product {product.code} (requested={requested}, available={available})",
        product_id=int(product.id),
        requested=requested,
        available=available,
    )


# ---------- PRIMITIVES ----------
def receive(
    db: Session,
    *,
    product_id: int,
    location_id: int,
    quantity: int,
    actor_id: int,
    unit_cost: Decimal | None = None,
    document_id: int | None = None,
    reference: str | None = None,
) -> StockMovement:
    _require_quantity(quantity)
    product = _lock_product(db, product_id)
    if not product.active:
        raise ValidationError(f"Product {product.code} is inactive")
    require_location(db, location_id)

    sl = _lock_stock_level(db, product_id, location_id, create=True)
    sl.quantity += quantity
    product.stock_current += quantity
    if unit_cost is not None and Decimal(unit_cost) > 0:
        product.cost_price = Decimal(unit_cost)

    mv = _append_movement(
        db,
        product_id=product_id,
        location_id=location_id,
        kind=MovementKind.entry,
        quantity=quantity,
        actor_id=actor_id,
        document_id=document_id,
        reference=reference,
    )
    db.flush()
    return mv


def adjust(
    db: Session,
    *,
    product_id: int,
    location_id: int,
    delta: int,
    reason: str,
    actor_id: int,
) -> StockMovement:
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("Adjustment delta must be a non-zero integer")
    if not reason or not reason.strip():
        raise ValidationError("Adjustment reason is required")

    product = _lock_product(db, product_id)
    require_location(db, location_id)

    sl = _lock_stock_level(db, product_id, location_id, create=delta > 0)
    quantity = sl.quantity if sl else 0
    reserved = sl.quantity_reserved if sl else 0

    # le stock réservé n'est pas ajustable
    if quantity + delta < reserved or product.stock_current + delta < 0:
        raise insufficient_stock(product, -delta, min(quantity - reserved, product.stock_current))

    sl.quantity += delta
    product.stock_current += delta

    mv = _append_movement(
        db,
        product_id=product_id,
        location_id=location_id,
        kind=MovementKind.adjustment,
        quantity=delta,
        actor_id=actor_id,
        reference=reason,
    )
    db.flush()
    return mv


def issue_for_loan(
    db: Session,
    *,
    product_id: int,
    quantity: int,
    actor_id: int,
    location_id: int | None = None,
    document_id: int | None = None,
    reference: str | None = None,
) -> StockMovement:
    _require_quantity(quantity)
    product = _lock_product(db, product_id)

    sl = None
    if location_id is not None:
        sl = _lock_stock_level(db, product_id, location_id)
        available = sl.available if sl else 0
    else:
        available = product.stock_current

    if available < quantity or product.stock_current < quantity:
        raise insufficient_stock(product, quantity, min(available, product.stock_current))

    product.stock_current -= quantity
    product.stock_requested += quantity
    if sl is not None:
        sl.quantity -= quantity

    mv = _append_movement(
        db,
        product_id=product_id,
        location_id=location_id,
        kind=MovementKind.loan_out,
        quantity=-quantity,
        actor_id=actor_id,
        document_id=document_id,
        reference=reference,
    )
    db.flush()
    return mv


def return_from_loan(
    db: Session,
    *,
    product_id: int,
    quantity: int,
    actor_id: int,
    location_id: int | None = None,
    document_id: int | None = None,
    reference: str | None = None,
) -> StockMovement:
    _require_quantity(quantity)
    product = _lock_product(db, product_id)

    product.stock_current += quantity
    product.stock_requested = max(0, product.stock_requested - quantity)
    if location_id is not None:
        require_location(db, location_id, active=False)
        sl = _lock_stock_level(db, product_id, location_id, create=True)
        sl.quantity += quantity

    mv = _append_movement(
        db,
        product_id=product_id,
        location_id=location_id,
        kind=MovementKind.loan_return,
        quantity=quantity,
        actor_id=actor_id,
        document_id=document_id,
        reference=reference,
    )
    db.flush()
    return mv


def write_off_loan(db: Session, *, product_id: int, quantity: int) -> None:
    """Perte : libère stock_requested. Pas de ligne ledger (déjà sorti à l'émission)."""
    _require_quantity(quantity)
    product = _lock_product(db, product_id)
    product.stock_requested = max(0, product.stock_requested - quantity)
    db.flush()


def reserve_for_transfer(db: Session, *, product_id: int, location_id: int, quantity: int) -> StockLevel:
    _require_quantity(quantity)
    product = _lock_product(db, product_id)

    sl = _lock_stock_level(db, product_id, location_id)
    available = sl.available if sl else 0
    if available < quantity:
        raise insufficient_stock(product, quantity, available)

    sl.quantity_reserved += quantity
    db.flush()
    return sl


def release_reservation(db: Session, *, product_id: int, location_id: int, quantity: int) -> StockLevel:
    _require_quantity(quantity)
    _lock_product(db, product_id)

    sl = _lock_stock_level(db, product_id, location_id)
    reserved = sl.quantity_reserved if sl else 0
    if reserved < quantity:
        raise InvalidStateError(
            f"Cannot release {quantity} units for product {product_id} at location {location_id} "
            f"(reserved={reserved})"
        )

    sl.quantity_reserved -= quantity
    db.flush()
    return sl


def commit_transfer(
    db: Session,
    *,
    product_id: int,
    source_location_id: int,
    destination_location_id: int,
    quantity: int,
    actor_id: int,
    document_id: int | None = None,
    reference: str | None = None,
) -> tuple[StockMovement, StockMovement]:
    """
    Déplace une quantité RÉSERVÉE de l'origine vers la destination.
    stock_current du produit ne bouge pas (net zéro).
    """
    _require_quantity(quantity)
    if source_location_id == destination_location_id:
        raise ValidationError("Source and destination locations must differ")

    _lock_product(db, product_id)

    # ordre déterministe des verrous stock_levels
    levels: dict[int, StockLevel | None] = {}
    for lid in sorted((source_location_id, destination_location_id)):
        levels[lid] = _lock_stock_level(db, product_id, lid)

    src = levels[source_location_id]
    if src is None or src.quantity_reserved < quantity or src.quantity < quantity:
        raise InvalidStateError(
            f"Reservation missing for product {product_id} at location {source_location_id}"
        )
    dst = levels[destination_location_id] or _lock_stock_level(
        db, product_id, destination_location_id, create=True
    )

    src.quantity -= quantity
    src.quantity_reserved -= quantity
    dst.quantity += quantity

    out_mv = _append_movement(
        db,
        product_id=product_id,
        location_id=source_location_id,
        kind=MovementKind.transfer_out,
        quantity=-quantity,
        actor_id=actor_id,
        document_id=document_id,
        reference=reference,
    )
    in_mv = _append_movement(
        db,
        product_id=product_id,
        location_id=destination_location_id,
        kind=MovementKind.transfer_in,
        quantity=quantity,
        actor_id=actor_id,
        document_id=document_id,
        reference=reference,
    )
    db.flush()
    return out_mv, in_mv


# ---------- LECTURES ----------
def get_stock_level(db: Session, product_id: int, location_id: int) -> StockLevel | None:
    return db.get(StockLevel, (product_id, location_id))


def available_quantity(
    db: Session,
    product_id: int,
    location_id: int | None = None,
    *,
    for_update: bool = False,
) -> int:
    """
    Sans local : stock_current du produit.
    Avec local : quantity - quantity_reserved (0 si aucune ligne).
    """
    if location_id is None:
        if for_update:
            return int(_lock_product(db, product_id).stock_current)
        product = db.get(Product, product_id)
        if product is None:
            raise NotFoundError(f"Product not found (id={product_id})")
        return int(product.stock_current)

    if for_update:
        sl = _lock_stock_level(db, product_id, location_id)
    else:
        sl = get_stock_level(db, product_id, location_id)
    return int(sl.available) if sl else 0


def ledger_balance(db: Session, product_id: int) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(StockMovement.quantity), 0)).where(StockMovement.product_id == product_id)
    ).scalar_one()
    return int(total)


def check_consistency(db: Session, product_ids: Iterable[int] | None = None) -> list[dict]:
    """
    Compare, par produit :
        stock_current  vs  SUM(ledger)            -> doit toujours être égal
        stock_current  vs  SUM(stock_levels)      -> égal si tout passe par des locaux
    """
    ledger_rows = db.execute(
        select(StockMovement.product_id, func.coalesce(func.sum(StockMovement.quantity), 0))
        .group_by(StockMovement.product_id)
    ).all()
    level_rows = db.execute(
        select(StockLevel.product_id, func.coalesce(func.sum(StockLevel.quantity), 0))
        .group_by(StockLevel.product_id)
    ).all()
    ledger = {int(pid): int(q) for pid, q in ledger_rows}
    levels = {int(pid): int(q) for pid, q in level_rows}

    stmt = select(Product).order_by(Product.id.asc())
    if product_ids is not None:
        stmt = stmt.where(Product.id.in_(sorted({int(pid) for pid in product_ids})))

    out = []
    for p in db.execute(stmt).scalars().all():
        pid = int(p.id)
        out.append(
            {
                "product_id": pid,
                "code": p.code,
                "stock_current": int(p.stock_current),
                "ledger_sum": ledger.get(pid, 0),
                "levels_sum": levels.get(pid, 0),
                "ledger_ok": int(p.stock_current) == ledger.get(pid, 0),
                "levels_ok": int(p.stock_current) == levels.get(pid, 0),
            }
        )
    return out


# ---------- UNITÉS DE TRAVAIL ----------
def receive_stock(db: Session, payload: ReceiveStockRequest, *, actor_id: int) -> StockMovement:
    with atomic(db):
        mv = receive(
            db,
            product_id=payload.product_id,
            location_id=payload.location_id,
            quantity=payload.quantity,
            actor_id=actor_id,
            unit_cost=payload.unit_cost,
            reference=payload.reference,
        )
        movement_id = int(mv.id)

    logger.info(
        "Stock received product=%s location=%s qty=%s",
        payload.product_id,
        payload.location_id,
        payload.quantity,
    )
    log_audit(
        db,
        actor_id=actor_id,
        action="STOCK_RECEIVED",
        affected_table="stock_movements",
        affected_id=movement_id,
        details={
            "product_id": payload.product_id,
            "location_id": payload.location_id,
            "quantity": payload.quantity,
        },
    )
    return mv


def adjust_stock(db: Session, payload: AdjustStockRequest, *, actor_id: int) -> StockMovement:
    with atomic(db):
        mv = adjust(
            db,
            product_id=payload.product_id,
            location_id=payload.location_id,
            delta=payload.delta,
            reason=payload.reason,
            actor_id=actor_id,
        )
        movement_id = int(mv.id)

    logger.info(
        "Stock adjusted product=%s location=%s delta=%s",
        payload.product_id,
        payload.location_id,
        payload.delta,
    )
    log_audit(
        db,
        actor_id=actor_id,
        action="STOCK_ADJUSTED",
        affected_table="stock_movements",
        affected_id=movement_id,
        details={
            "product_id": payload.product_id,
            "location_id": payload.location_id,
            "delta": payload.delta,
            "reason": payload.reason,
        },
    )
    return mv


def register_entry(db: Session, payload: CreateEntryRequest, *, actor_id: int) -> StockEntry:
    """
    Entrée multi-lignes (document fournisseur).
    Tout est validé avant la première écriture ; un échec annule le document entier.
    """
    with atomic(db):
        if payload.supplier_id is not None:
            supplier = db.get(Supplier, payload.supplier_id)
            if supplier is None or not supplier.active:
                raise NotFoundError(f"Supplier not found (id={payload.supplier_id})")
        require_location(db, payload.location_id)

        products = lock_products(db, [it.product_id for it in payload.items])
        for p in products.values():
            if not p.active:
                raise ValidationError(f"Product {p.code} is inactive")

        entry = StockEntry(
            code=generate_code(ENTRY_PREFIX),
            supplier_id=payload.supplier_id,
            document_number=payload.document_number,
            document_type=payload.document_type,
            location_id=payload.location_id,
            user_id=actor_id,
            note=payload.note,
            status=EntryStatus.pending,
        )
        for it in payload.items:
            entry.items.append(
                StockEntryItem(
                    product_id=it.product_id,
                    quantity_requested=it.quantity_requested or it.quantity,
                    quantity_received=it.quantity,
                    unit_cost=it.unit_cost,
                    lot=it.lot,
                    expiry_date=it.expiry_date,
                )
            )
        db.add(entry)
        db.flush()

        for it in payload.items:
            receive(
                db,
                product_id=it.product_id,
                location_id=payload.location_id,
                quantity=it.quantity,
                actor_id=actor_id,
                unit_cost=it.unit_cost,
                document_id=int(entry.id),
                reference=entry.code,
            )

        entry.status = EntryStatus.completed
        db.flush()
        entry_id = int(entry.id)
        entry_code = entry.code

    logger.info("Stock entry %s registered (%d items)", entry_code, len(payload.items))
    log_audit(
        db,
        actor_id=actor_id,
        action="ENTRY_REGISTERED",
        affected_table="stock_entries",
        affected_id=entry_id,
        details={"code": entry_code, "items": len(payload.items)},
    )
    return entry
