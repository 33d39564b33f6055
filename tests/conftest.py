"""Shared fixtures: a file-backed SQLite database with the escrow tables."""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.db.base import Base
from app.models import audit_log, booking, notification, service_offering, transaction_history, wallet  # noqa: F401
from tests.factories import NOW, fund, make_offering


@pytest.fixture()
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'escrow.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def offering(db):
    return make_offering(db)


@pytest.fixture()
def call_offering(db):
    return make_offering(
        db,
        name="Video call",
        billing_type="per_minute",
        minute_rate=1_000,
        commission_rate=20,
    )


@pytest.fixture()
def wallets(db):
    """Customer with 500,000 and an empty model wallet."""
    fund(db, "customer", "customer-1", 500_000)
    fund(db, "model", "model-1")
    return db
