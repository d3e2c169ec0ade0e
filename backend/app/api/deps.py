from __future__ import annotations

from typing import Callable, Generator

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from backend.app.db.models.core_types import Role
from backend.app.db.models.models_v1 import User
from backend.app.db.session import SessionLocal


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    x_user_id: int | None = Header(default=None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    """
    L'authentification (mot de passe / token) est faite en amont :
    ici on ne fait que résoudre l'acteur déjà authentifié.
    """
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user = db.get(User, x_user_id)
    if user is None or not user.active:
        raise HTTPException(status_code=401, detail="Unknown or inactive user")
    return user


def require_roles(*roles: Role) -> Callable[..., User]:
    allowed = set(roles)

    def _dep(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            raise HTTPException(status_code=403, detail=f"Role {user.role.value} not allowed")
        return user

    return _dep


# écriture = admin / operator ; lecture = tout utilisateur actif
require_writer = require_roles(Role.admin, Role.operator)
require_admin = require_roles(Role.admin)
