"""
Journal d'audit.

Écrit APRÈS le commit de l'opération métier, dans sa propre session :
un échec d'audit est loggé puis ignoré, il n'annule jamais l'opération.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from backend.app.db.base import utcnow
from backend.app.db.models.models_v1 import AuditLog

logger = logging.getLogger(__name__)


def log_audit(
    db: Session,
    *,
    actor_id: int | None,
    action: str,
    affected_table: str,
    affected_id: int | str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    try:
        with Session(bind=db.get_bind()) as audit_db:
            audit_db.add(
                AuditLog(
                    actor_id=actor_id,
                    action=action,
                    affected_table=affected_table,
                    affected_id=None if affected_id is None else str(affected_id),
                    details=details,
                )
            )
            audit_db.commit()
    except Exception:
        logger.error(
            "Audit write failed (action=%s table=%s id=%s)",
            action,
            affected_table,
            affected_id,
            exc_info=True,
        )


def list_audit(
    db: Session,
    *,
    affected_table: str | None = None,
    actor_id: int | None = None,
    limit: int = 100,
) -> list[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
    if affected_table:
        stmt = stmt.where(AuditLog.affected_table == affected_table)
    if actor_id is not None:
        stmt = stmt.where(AuditLog.actor_id == actor_id)
    return list(db.execute(stmt).scalars().all())


def purge_audit_log(db: Session, older_than_days: int) -> int:
    """Supprime les entrées plus anciennes que `older_than_days`. Ne commit pas."""
    cutoff = utcnow() - timedelta(days=older_than_days)
    result = db.execute(delete(AuditLog).where(AuditLog.created_at < cutoff))
    return int(result.rowcount or 0)
