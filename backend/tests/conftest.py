import itertools
import os
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.api.deps import get_db
from backend.app.db.base import Base
from backend.app.db.models.core_types import Role
from backend.app.db.models.models_v1 import Collaborator, Location, Product, Supplier, User
from backend.app.main import app
from backend.services import inventory

# Postgres possible via TEST_DATABASE_URL, SQLite mémoire sinon
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")


def _make_engine():
    if TEST_DATABASE_URL.startswith("sqlite"):
        # une seule connexion partagée (TestClient tourne dans un autre thread)
        return create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(TEST_DATABASE_URL, pool_pre_ping=True)


@pytest.fixture(scope="function")
def engine():
    eng = _make_engine()
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(bind=eng)
        eng.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Session:
    """
    Session DB isolée par test.

    Schéma recréé à chaque test : les services commit réellement
    (unité de travail), un rollback englobant ne suffirait pas.
    """
    session = sessionmaker(bind=engine, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


class Factory:
    """Données de référence minimales, chaque appel commit."""

    def __init__(self, db: Session):
        self.db = db
        self._seq = itertools.count(1)

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def user(self, role: Role = Role.admin, active: bool = True) -> User:
        n = next(self._seq)
        return self._save(User(name=f"USER-{n}", email=f"user{n}@test.local", role=role, active=active))

    def location(self, active: bool = True) -> Location:
        n = next(self._seq)
        return self._save(Location(code=f"LOC-{n}", name=f"Location {n}", active=active))

    def product(self, minimum: int = 0, cost: Decimal = Decimal("0"), active: bool = True) -> Product:
        n = next(self._seq)
        return self._save(
            Product(
                code=f"P-{n:04d}",
                description=f"Product {n}",
                unit="UN",
                stock_current=0,
                stock_requested=0,
                stock_minimum=minimum,
                stock_maximum=0,
                cost_price=cost,
                active=active,
            )
        )

    def collaborator(self, active: bool = True) -> Collaborator:
        n = next(self._seq)
        return self._save(Collaborator(registration=f"MAT-{n}", name=f"Collaborator {n}", active=active))

    def supplier(self, active: bool = True) -> Supplier:
        n = next(self._seq)
        return self._save(Supplier(name=f"Supplier {n}", active=active))

    def stock(self, product: Product, location: Location, quantity: int, actor: User) -> None:
        inventory.receive(
            self.db,
            product_id=product.id,
            location_id=location.id,
            quantity=quantity,
            actor_id=actor.id,
            reference="initial stock",
        )
        self.db.commit()


@pytest.fixture
def factory(db_session) -> Factory:
    return Factory(db_session)


@pytest.fixture
def admin(factory) -> User:
    return factory.user(Role.admin)


@pytest.fixture
def api_client(db_session):
    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()
