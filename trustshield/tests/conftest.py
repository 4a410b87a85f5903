import os

# Keep the app module off the on-disk database and the shared rate limiter
os.environ.setdefault("TRUSTSHIELD_DATABASE_URL", "sqlite://")
os.environ.setdefault("TRUSTSHIELD_RATE_LIMIT_REQUESTS", "0")

from datetime import timedelta

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from trustshield.api.server import app
from trustshield.database import Base, get_db
from trustshield.models.account import Account
from trustshield.models.transaction import Transaction
from trustshield.schemas.domain import TransactionStatus
from trustshield.services.notification_service import RecordingDispatcher
from trustshield.services.profile_service import DatabaseProfileAccessor
from trustshield.services.tracking_repository import TrackingRepository
from trustshield.utils.clock import utcnow


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.current = start or utcnow()

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    """Create a test database session."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def master_key():
    return Fernet.generate_key()


@pytest.fixture
def notifier():
    return RecordingDispatcher()


@pytest.fixture
def repository(db):
    return TrackingRepository(db)


@pytest.fixture
def profiles(db):
    return DatabaseProfileAccessor(db)


@pytest.fixture
def make_account(db):
    """Factory for accounts of a given age in days."""

    def _make(user_id, age_days=60, **fields):
        account = Account(user_id=user_id, created_at=utcnow() - timedelta(days=age_days), **fields)
        db.add(account)
        db.commit()
        return account

    return _make


@pytest.fixture
def make_transaction(db):
    """Factory for transactions between two parties."""

    def _make(transaction_id, party_a, party_b, status=TransactionStatus.DONE, completed_days_ago=1, **fields):
        completed_at = utcnow() - timedelta(days=completed_days_ago) if completed_days_ago is not None else None
        transaction = Transaction(
            id=transaction_id,
            party_a=party_a,
            party_b=party_b,
            status=status.value,
            initiated_at=(completed_at or utcnow()) - timedelta(hours=2),
            completed_at=completed_at,
            **fields,
        )
        db.add(transaction)
        db.commit()
        return transaction

    return _make


@pytest.fixture
def client(db):
    """FastAPI test client fixture bound to the test database."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.state.report_cache.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()
