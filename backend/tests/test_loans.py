from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from backend.app.core.errors import (
    InsufficientStockError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from backend.app.db.models.core_types import ItemCondition, LoanStatus, MovementKind, Role
from backend.app.db.models.models_v1 import AuditLog, Loan, LoanItem, StockLevel, StockMovement
from backend.app.schemas.loans import (
    CreateLoanRequest,
    LoanItemIn,
    MarkLostRequest,
    ReturnItemIn,
    ReturnItemsRequest,
)
from backend.services import inventory, loans


def _due(days: int = 7) -> date:
    return datetime.now(timezone.utc).date() + timedelta(days=days)


@pytest.fixture
def setup(db_session, factory, admin):
    """Deux produits en stock dans un local, un collaborateur actif."""
    loc = factory.location()
    p1 = factory.product()
    p2 = factory.product()
    factory.stock(p1, loc, 10, admin)
    factory.stock(p2, loc, 5, admin)
    collab = factory.collaborator()
    return {"loc": loc, "p1": p1, "p2": p2, "collab": collab, "admin": admin}


def _create(db, s, items, due=None):
    return loans.create_loan(
        db,
        CreateLoanRequest(collaborator_id=s["collab"].id, due_date=due or _due(), items=items),
        actor_id=s["admin"].id,
    )


def test_create_loan_issues_every_item(db_session, setup):
    s = setup
    loan = _create(
        db_session,
        s,
        [
            LoanItemIn(product_id=s["p1"].id, quantity=3, location_id=s["loc"].id),
            LoanItemIn(product_id=s["p2"].id, quantity=2, location_id=s["loc"].id),
        ],
    )

    assert loan.status == LoanStatus.open
    assert loan.code.startswith("EMP")
    assert [it.quantity_issued for it in loan.items] == [3, 2]
    assert all(it.condition_out == ItemCondition.used for it in loan.items)

    db_session.refresh(s["p1"])
    assert (s["p1"].stock_current, s["p1"].stock_requested) == (7, 3)
    assert db_session.get(StockLevel, (s["p1"].id, s["loc"].id)).quantity == 7

    out_rows = db_session.execute(
        select(StockMovement).where(StockMovement.kind == MovementKind.loan_out)
    ).scalars().all()
    assert {(m.product_id, m.quantity, m.document_id, m.reference) for m in out_rows} == {
        (s["p1"].id, -3, loan.id, loan.code),
        (s["p2"].id, -2, loan.id, loan.code),
    }
    assert db_session.execute(
        select(AuditLog).where(AuditLog.action == "LOAN_CREATED")
    ).scalar_one().affected_id == str(loan.id)


def test_create_loan_is_all_or_nothing(db_session, setup):
    s = setup
    with pytest.raises(InsufficientStockError):
        _create(
            db_session,
            s,
            [
                LoanItemIn(product_id=s["p1"].id, quantity=3, location_id=s["loc"].id),
                LoanItemIn(product_id=s["p2"].id, quantity=6, location_id=s["loc"].id),
            ],
        )

    db_session.refresh(s["p1"])
    assert (s["p1"].stock_current, s["p1"].stock_requested) == (10, 0)
    assert db_session.execute(select(func.count(Loan.id))).scalar_one() == 0
    assert db_session.execute(
        select(func.count(StockMovement.id)).where(StockMovement.kind == MovementKind.loan_out)
    ).scalar_one() == 0


def test_create_loan_sums_repeated_lines(db_session, setup):
    s = setup
    with pytest.raises(InsufficientStockError):
        _create(
            db_session,
            s,
            [
                LoanItemIn(product_id=s["p2"].id, quantity=3, location_id=s["loc"].id),
                LoanItemIn(product_id=s["p2"].id, quantity=3, location_id=s["loc"].id),
            ],
        )
    db_session.refresh(s["p2"])
    assert s["p2"].stock_current == 5


def test_create_loan_validations(db_session, setup, factory):
    s = setup
    item = [LoanItemIn(product_id=s["p1"].id, quantity=1)]

    inactive = factory.collaborator(active=False)
    with pytest.raises(NotFoundError):
        loans.create_loan(
            db_session,
            CreateLoanRequest(collaborator_id=inactive.id, due_date=_due(), items=item),
            actor_id=s["admin"].id,
        )

    with pytest.raises(ValidationError):
        _create(db_session, s, item, due=_due(-1))

    dead = factory.product(active=False)
    with pytest.raises(NotFoundError):
        _create(db_session, s, [LoanItemIn(product_id=dead.id, quantity=1)])


def test_scenario_d_partial_then_full_return(db_session, setup):
    s = setup
    loan = _create(
        db_session,
        s,
        [
            LoanItemIn(product_id=s["p1"].id, quantity=3, location_id=s["loc"].id),
            LoanItemIn(product_id=s["p2"].id, quantity=2, location_id=s["loc"].id),
        ],
    )
    item1, item2 = loan.items

    loan = loans.return_items(
        db_session,
        loan.id,
        ReturnItemsRequest(items=[ReturnItemIn(item_id=item1.id, quantity=3, condition=ItemCondition.damaged)]),
        actor_id=s["admin"].id,
    )
    assert loan.status == LoanStatus.partially_returned
    assert loan.returned_at is None
    item1 = db_session.get(LoanItem, item1.id)
    assert item1.quantity_returned == 3
    assert item1.condition_in == ItemCondition.damaged
    assert item1.returned_at is not None

    loan = loans.return_items(
        db_session,
        loan.id,
        ReturnItemsRequest(items=[ReturnItemIn(item_id=item2.id, quantity=2)]),
        actor_id=s["admin"].id,
    )
    assert loan.status == LoanStatus.returned
    assert loan.returned_at is not None

    db_session.refresh(s["p1"])
    assert (s["p1"].stock_current, s["p1"].stock_requested) == (10, 0)
    returns = db_session.execute(
        select(StockMovement).where(StockMovement.kind == MovementKind.loan_return)
    ).scalars().all()
    assert {m.reference for m in returns} == {f"DEV-{loan.id}"}


def test_return_more_than_pending_is_rejected(db_session, setup):
    s = setup
    loan = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=3, location_id=s["loc"].id)])
    item = loan.items[0]

    with pytest.raises(ValidationError, match="exceeds pending"):
        loans.return_items(
            db_session,
            loan.id,
            ReturnItemsRequest(items=[ReturnItemIn(item_id=item.id, quantity=2), ReturnItemIn(item_id=item.id, quantity=2)]),
            actor_id=s["admin"].id,
        )
    db_session.refresh(s["p1"])
    assert s["p1"].stock_current == 7


def test_return_item_of_another_loan(db_session, setup):
    s = setup
    loan_a = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=1)])
    loan_b = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=1)])
    foreign_item_id = loan_b.items[0].id

    with pytest.raises(NotFoundError):
        loans.return_items(
            db_session,
            loan_a.id,
            ReturnItemsRequest(items=[ReturnItemIn(item_id=foreign_item_id, quantity=1)]),
            actor_id=s["admin"].id,
        )


def test_mark_lost_writes_off_pending_and_is_terminal(db_session, setup):
    s = setup
    loan = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=4, location_id=s["loc"].id)])
    item = loan.items[0]
    loans.return_items(
        db_session,
        loan.id,
        ReturnItemsRequest(items=[ReturnItemIn(item_id=item.id, quantity=1)]),
        actor_id=s["admin"].id,
    )

    loan = loans.mark_lost(db_session, loan.id, MarkLostRequest(note="lost on site"), actor_id=s["admin"].id)
    assert loan.status == LoanStatus.lost
    assert loan.note == "lost on site"
    assert loan.items[0].quantity_lost == 3

    db_session.refresh(s["p1"])
    assert (s["p1"].stock_current, s["p1"].stock_requested) == (7, 0)
    ledger_before = inventory.ledger_balance(db_session, s["p1"].id)

    with pytest.raises(InvalidStateError):
        loans.mark_lost(db_session, loan.id, MarkLostRequest(), actor_id=s["admin"].id)
    with pytest.raises(InvalidStateError):
        loans.return_items(
            db_session,
            loan.id,
            ReturnItemsRequest(items=[ReturnItemIn(item_id=item.id, quantity=1)]),
            actor_id=s["admin"].id,
        )

    db_session.refresh(s["p1"])
    assert (s["p1"].stock_current, s["p1"].stock_requested) == (7, 0)
    assert inventory.ledger_balance(db_session, s["p1"].id) == ledger_before == 7


def test_mark_lost_requires_approver_role(db_session, setup, factory):
    s = setup
    operator = factory.user(Role.operator)
    loan = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=1)])

    with pytest.raises(PermissionDeniedError):
        loans.mark_lost(db_session, loan.id, MarkLostRequest(), actor_id=operator.id)
    assert loans.get_loan(db_session, loan.id).status == LoanStatus.open


def test_effective_status_and_overdue_persistence(db_session, setup):
    s = setup
    loan = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=1)], due=_due(0))
    later = datetime.now(timezone.utc) + timedelta(days=2)

    assert loans.compute_effective_status(loan, datetime.now(timezone.utc)) == LoanStatus.open
    assert loans.compute_effective_status(loan, later) == LoanStatus.overdue
    assert loan.status == LoanStatus.open  # pure

    assert loans.get_loan(db_session, loan.id, now=later).status == LoanStatus.overdue
    # idempotent
    assert loans.refresh_overdue(db_session, later) == 0

    # un prêt OVERDUE reste retournable
    loan = loans.return_items(
        db_session,
        loan.id,
        ReturnItemsRequest(items=[ReturnItemIn(item_id=loan.items[0].id, quantity=1)]),
        actor_id=s["admin"].id,
    )
    assert loan.status == LoanStatus.returned
    assert loans.compute_effective_status(loan, later) == LoanStatus.returned


def test_list_loans_refreshes_overdue_and_due_soon(db_session, setup):
    s = setup
    soon = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=1)], due=_due(3))
    far = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=1)], due=_due(30))

    due_ids = [l.id for l in loans.loans_due_soon(db_session)]
    assert due_ids == [soon.id]

    later = datetime.now(timezone.utc) + timedelta(days=10)
    rows = loans.list_loans(db_session, now=later)
    statuses = {l.id: l.status for l in rows}
    assert statuses == {soon.id: LoanStatus.overdue, far.id: LoanStatus.open}

    assert [l.id for l in loans.list_loans(db_session, status=LoanStatus.overdue)] == [soon.id]
    assert {l.id for l in loans.list_loans(db_session, search=soon.code)} == {soon.id}


def test_due_soon_returns_effective_overdue_status(db_session, setup):
    s = setup
    loan = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=1)], due=_due(0))
    later = datetime.now(timezone.utc) + timedelta(days=3)

    due = loans.loans_due_soon(db_session, now=later)
    assert [(l.id, l.status) for l in due] == [(loan.id, LoanStatus.overdue)]


def test_partial_return_on_past_due_loan_stays_overdue(db_session, setup):
    s = setup
    loan = _create(db_session, s, [LoanItemIn(product_id=s["p1"].id, quantity=2)])
    loan.due_date = _due(-3)
    db_session.commit()

    loan = loans.return_items(
        db_session,
        loan.id,
        ReturnItemsRequest(items=[ReturnItemIn(item_id=loan.items[0].id, quantity=1)]),
        actor_id=s["admin"].id,
    )
    assert loan.status == LoanStatus.overdue
    assert loan.items[0].quantity_pending == 1
    db_session.expire_all()
    assert db_session.get(Loan, loan.id).status == LoanStatus.overdue
