from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from backend.app.api.deps import get_current_user, get_db
from backend.app.db.models.models_v1 import User
from backend.services import reports

router = APIRouter(prefix="/reports")


@router.get("/dashboard")
def dashboard(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return reports.dashboard(db)


@router.get("/stock-position")
def stock_position(group_id: int | None = None, db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return reports.stock_position(db, group_id=group_id)


@router.get("/stockouts")
def stockouts(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return reports.stockouts(db)


@router.get("/movements")
def movements(
    start: date | None = None,
    end: date | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    return reports.movements_by_period(db, start=start, end=end)


@router.get("/loans")
def loans(
    start: date | None = None,
    end: date | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    return reports.loans_by_status(db, start=start, end=end)


@router.get("/transfers")
def transfers(
    start: date | None = None,
    end: date | None = None,
    db: Session = Depends(get_db),
    _: User = Depends(get_current_user),
):
    return reports.transfers_by_status(db, start=start, end=end)


@router.get("/locations")
def locations(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return reports.location_summary(db)


@router.get("/consistency")
def consistency(db: Session = Depends(get_db), _: User = Depends(get_current_user)):
    return reports.consistency(db)
