from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from backend.app.api.deps import get_db, require_admin
from backend.app.core.config import settings
from backend.app.db.models.models_v1 import User
from backend.services.audit import list_audit, log_audit, purge_audit_log

router = APIRouter(prefix="/audit")


@router.get("")
def list_entries(
    affected_table: str | None = None,
    actor_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
    _: User = Depends(require_admin),
):
    return [
        {
            "id": a.id,
            "actor_id": a.actor_id,
            "action": a.action,
            "affected_table": a.affected_table,
            "affected_id": a.affected_id,
            "details": a.details,
            "created_at": a.created_at,
        }
        for a in list_audit(db, affected_table=affected_table, actor_id=actor_id, limit=limit)
    ]


@router.post("/purge")
def purge(
    older_than_days: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    days = older_than_days or settings.AUDIT_RETENTION_DAYS
    deleted = purge_audit_log(db, days)
    db.commit()

    log_audit(db, actor_id=admin.id, action="AUDIT_PURGED", affected_table="audit_log",
              details={"older_than_days": days, "deleted": deleted})
    return {"deleted": deleted, "older_than_days": days}
