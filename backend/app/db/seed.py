from __future__ import annotations

from sqlalchemy import select

from backend.app.db.session import SessionLocal
from backend.app.db.models.models_v1 import Location, User
from backend.app.db.models.core_types import Role

ADMIN_EMAIL = "admin@almoxarifado.local"
DEFAULT_LOCATION_CODE = "ALM-01"


def run_seed():
    db = SessionLocal()
    try:
        # 1) Local par défaut
        location = db.scalar(select(Location).where(Location.code == DEFAULT_LOCATION_CODE))
        if not location:
            location = Location(code=DEFAULT_LOCATION_CODE, name="Almoxarifado Central", active=True)
            db.add(location)
            db.commit()

        # 2) Admin (identité + rôle seulement, les credentials sont gérés en amont)
        user = db.scalar(select(User).where(User.email == ADMIN_EMAIL))
        if not user:
            user = User(name="ADMIN", email=ADMIN_EMAIL, role=Role.admin, active=True)
            db.add(user)
            db.commit()

        print(f"SEED OK: location={location.code}, user={user.email} (id={user.id})")
    finally:
        db.close()


if __name__ == "__main__":
    run_seed()
