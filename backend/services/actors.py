from __future__ import annotations

from typing import Iterable

from sqlalchemy.orm import Session

from backend.app.core.errors import PermissionDeniedError
from backend.app.db.models.models_v1 import User


def require_role(db: Session, actor_id: int, roles: Iterable[str]) -> User:
    """L'acteur doit exister, être actif et porter un des rôles donnés."""
    allowed = {str(r) for r in roles}
    user = db.get(User, actor_id)
    if user is None or not user.active:
        raise PermissionDeniedError(f"Unknown or inactive user (id={actor_id})")
    if user.role.value not in allowed:
        raise PermissionDeniedError(f"Role {user.role.value} is not allowed for this operation")
    return user
