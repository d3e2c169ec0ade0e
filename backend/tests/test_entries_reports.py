from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.db.models.core_types import EntryStatus, LoanStatus, MovementKind, TransferStatus
from backend.app.db.models.models_v1 import AuditLog, Loan, StockEntry, StockLevel, StockMovement
from backend.app.schemas.loans import CreateLoanRequest, LoanItemIn, MarkLostRequest
from backend.app.schemas.stock import CreateEntryRequest, EntryItemIn
from backend.app.schemas.transfers import CreateTransferRequest, TransferItemIn
from backend.services import audit, inventory, loans, reports, transfers


def _today() -> date:
    return datetime.now(timezone.utc).date()


# ---------- ENTRÉES ----------
def test_register_entry_receives_every_line(db_session, factory, admin):
    loc = factory.location()
    supplier = factory.supplier()
    p1 = factory.product()
    p2 = factory.product(cost=Decimal("1.00"))

    entry = inventory.register_entry(
        db_session,
        CreateEntryRequest(
            location_id=loc.id,
            supplier_id=supplier.id,
            document_number="NF-123",
            document_type="INVOICE",
            items=[
                EntryItemIn(product_id=p1.id, quantity=5, unit_cost=Decimal("2.00"), lot="L1"),
                EntryItemIn(product_id=p2.id, quantity=3, quantity_requested=4, expiry_date=_today()),
            ],
        ),
        actor_id=admin.id,
    )

    assert entry.code.startswith("ENT")
    assert entry.status == EntryStatus.completed
    assert [(it.quantity_requested, it.quantity_received) for it in entry.items] == [(5, 5), (4, 3)]

    db_session.refresh(p1)
    db_session.refresh(p2)
    assert (p1.stock_current, p1.cost_price) == (5, Decimal("2.00"))
    assert (p2.stock_current, p2.cost_price) == (3, Decimal("1.00"))

    rows = db_session.execute(
        select(StockMovement).where(StockMovement.document_id == entry.id)
    ).scalars().all()
    assert {(m.kind, m.reference) for m in rows} == {(MovementKind.entry, entry.code)}


def test_register_entry_is_all_or_nothing(db_session, factory, admin):
    loc = factory.location()
    ok = factory.product()
    dead = factory.product(active=False)

    with pytest.raises(ValidationError):
        inventory.register_entry(
            db_session,
            CreateEntryRequest(
                location_id=loc.id,
                items=[EntryItemIn(product_id=ok.id, quantity=5), EntryItemIn(product_id=dead.id, quantity=1)],
            ),
            actor_id=admin.id,
        )

    db_session.refresh(ok)
    assert ok.stock_current == 0
    assert db_session.execute(select(func.count(StockEntry.id))).scalar_one() == 0


def test_register_entry_unknown_supplier(db_session, factory, admin):
    loc = factory.location()
    p = factory.product()
    inactive = factory.supplier(active=False)

    with pytest.raises(NotFoundError):
        inventory.register_entry(
            db_session,
            CreateEntryRequest(
                location_id=loc.id,
                supplier_id=inactive.id,
                items=[EntryItemIn(product_id=p.id, quantity=1)],
            ),
            actor_id=admin.id,
        )


# ---------- REPORTING ----------
@pytest.fixture
def world(db_session, factory, admin):
    l1 = factory.location()
    l2 = factory.location()
    critical = factory.product(minimum=10, cost=Decimal("2.00"))
    attention = factory.product(minimum=10)
    normal = factory.product(minimum=10)
    factory.stock(critical, l1, 10, admin)
    factory.stock(attention, l1, 15, admin)
    factory.stock(normal, l1, 16, admin)
    collab = factory.collaborator()
    return {"l1": l1, "l2": l2, "critical": critical, "attention": attention, "normal": normal, "collab": collab}


def test_stock_position_status_thresholds(db_session, world):
    rows = {r["product_id"]: r for r in reports.stock_position(db_session)}

    assert rows[world["critical"].id]["status"] == "CRITICAL"
    assert rows[world["attention"].id]["status"] == "ATTENTION"
    assert rows[world["normal"].id]["status"] == "NORMAL"
    assert rows[world["critical"].id]["total_value"] == Decimal("20.00")


def test_low_stock_and_stockouts(db_session, world, admin):
    inventory.adjust(
        db_session,
        product_id=world["critical"].id,
        location_id=world["l1"].id,
        delta=-4,
        reason="count",
        actor_id=admin.id,
    )
    db_session.commit()

    assert [p.id for p in reports.low_stock(db_session)] == [world["critical"].id]
    outs = reports.stockouts(db_session)
    assert [(r["product_id"], r["missing"]) for r in outs] == [(world["critical"].id, 4)]


def test_movements_by_period(db_session, world, admin):
    inventory.adjust(
        db_session,
        product_id=world["normal"].id,
        location_id=world["l1"].id,
        delta=-1,
        reason="count",
        actor_id=admin.id,
    )
    db_session.commit()

    rows = {r["kind"]: r for r in reports.movements_by_period(db_session, start=_today(), end=_today())}
    assert rows[MovementKind.entry]["movements"] == 3
    assert rows[MovementKind.entry]["quantity"] == 41
    assert rows[MovementKind.adjustment]["quantity"] == -1

    tomorrow = _today() + timedelta(days=1)
    assert reports.movements_by_period(db_session, start=tomorrow) == []


def test_loans_and_transfers_by_status(db_session, world, admin):
    loans.create_loan(
        db_session,
        CreateLoanRequest(
            collaborator_id=world["collab"].id,
            due_date=_today() + timedelta(days=5),
            items=[
                LoanItemIn(product_id=world["normal"].id, quantity=2, location_id=world["l1"].id),
                LoanItemIn(product_id=world["attention"].id, quantity=1, location_id=world["l1"].id),
            ],
        ),
        actor_id=admin.id,
    )
    t = transfers.create_transfer(
        db_session,
        CreateTransferRequest(
            source_location_id=world["l1"].id,
            destination_location_id=world["l2"].id,
            items=[TransferItemIn(product_id=world["normal"].id, quantity=1)],
        ),
        actor_id=admin.id,
    )
    transfers.cancel_transfer(db_session, t.id, actor_id=admin.id)

    loan_rows = reports.loans_by_status(db_session)
    assert loan_rows == [
        {
            "status": LoanStatus.open,
            "loans": 1,
            "collaborators": 1,
            "quantity_issued": 3,
            "quantity_returned": 0,
            "quantity_lost": 0,
        }
    ]
    transfer_rows = reports.transfers_by_status(db_session)
    assert transfer_rows == [{"status": TransferStatus.cancelled, "transfers": 1, "origins": 1, "destinations": 1}]


def test_location_summary_and_dashboard(db_session, world):
    summary = {r["location_id"]: r for r in reports.location_summary(db_session)}
    assert summary[world["l1"].id]["products"] == 3
    assert summary[world["l1"].id]["quantity"] == 41
    assert summary[world["l1"].id]["value"] == Decimal("20")
    assert summary[world["l2"].id]["quantity"] == 0

    dash = reports.dashboard(db_session)
    assert dash["products_active"] == 3
    assert dash["products_low_stock"] == 1
    assert dash["loans_active"] == 0
    assert dash["movements_today"] == 3


def test_consistency_reports_only_unscoped_drift(db_session, world, admin):
    assert reports.consistency(db_session) == []

    # prêt sans local : seul l'agrégat bouge
    loans.create_loan(
        db_session,
        CreateLoanRequest(
            collaborator_id=world["collab"].id,
            due_date=_today(),
            items=[LoanItemIn(product_id=world["normal"].id, quantity=2)],
        ),
        actor_id=admin.id,
    )
    rows = reports.consistency(db_session)
    assert len(rows) == 1
    assert rows[0]["product_id"] == world["normal"].id
    assert rows[0]["ledger_ok"] is True
    assert rows[0]["levels_ok"] is False


# ---------- AUDIT ----------
def test_audit_purge_removes_old_rows(db_session, admin):
    audit.log_audit(db_session, actor_id=admin.id, action="OLD", affected_table="products", affected_id=1)
    audit.log_audit(db_session, actor_id=admin.id, action="NEW", affected_table="products", affected_id=2)

    old = db_session.execute(select(AuditLog).where(AuditLog.action == "OLD")).scalar_one()
    old.created_at = datetime.now(timezone.utc) - timedelta(days=200)
    db_session.commit()

    assert audit.purge_audit_log(db_session, 180) == 1
    db_session.commit()
    assert [a.action for a in audit.list_audit(db_session)] == ["NEW"]


def test_audit_failure_never_raises(db_session, admin, caplog):
    # details non sérialisable en JSON : l'écriture échoue, l'appelant n'en sait rien
    audit.log_audit(
        db_session,
        actor_id=admin.id,
        action="BROKEN",
        affected_table="products",
        details={"bad": object()},
    )
    assert db_session.execute(select(func.count(AuditLog.id))).scalar_one() == 0
    assert "Audit write failed" in caplog.text


def test_loans_by_status_uses_effective_status_and_reports_lost(db_session, world, admin):
    late = loans.create_loan(
        db_session,
        CreateLoanRequest(
            collaborator_id=world["collab"].id,
            due_date=_today(),
            items=[LoanItemIn(product_id=world["normal"].id, quantity=2, location_id=world["l1"].id)],
        ),
        actor_id=admin.id,
    )
    gone = loans.create_loan(
        db_session,
        CreateLoanRequest(
            collaborator_id=world["collab"].id,
            due_date=_today() + timedelta(days=30),
            items=[LoanItemIn(product_id=world["attention"].id, quantity=3, location_id=world["l1"].id)],
        ),
        actor_id=admin.id,
    )
    loans.mark_lost(db_session, gone.id, MarkLostRequest(), actor_id=admin.id)
    later = datetime.now(timezone.utc) + timedelta(days=3)

    rows = {r["status"]: r for r in reports.loans_by_status(db_session, now=later)}
    assert set(rows) == {LoanStatus.overdue, LoanStatus.lost}
    assert rows[LoanStatus.overdue]["loans"] == reports.dashboard(db_session, now=later)["loans_overdue"] == 1
    assert rows[LoanStatus.lost]["quantity_issued"] == 3
    assert rows[LoanStatus.lost]["quantity_lost"] == 3

    # lecture seule : le statut stocké n'a pas bougé
    db_session.expire_all()
    assert db_session.get(Loan, late.id).status == LoanStatus.open
