import os
import uuid
from datetime import date, datetime, timezone
from typing import Any

# Settings are read at import time.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_" + "a1B2c3D4e5F6g7H8i9J0k1L2")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
from app.models.message import Message
from app.models.subscriber import Subscriber
from app.schemas.billing import BillCreate
from app.services import billing as billing_service
from app.services.stripe_client import StripeClient
from tests.mocks import FakeStripe

MARCH_START = date(2026, 3, 1)
MARCH_END = date(2026, 3, 31)


class _JoseDateTimeProxy:
    def utcnow(self):
        return datetime.now(timezone.utc)

    def now(self, tz: Any | None = None):
        return datetime.now(tz)

    def __getattr__(self, name: str) -> Any:
        return getattr(datetime, name)


@pytest.fixture(autouse=True)
def _patch_jose_datetime(monkeypatch):
    import jose.jwt as jose_jwt

    monkeypatch.setattr(jose_jwt, "datetime", _JoseDateTimeProxy(), raising=False)


@pytest.fixture()
def engine():
    # One database per test: services commit and roll back on their own, so
    # an outer transaction cannot isolate them.
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


def make_subscriber(db_session, **overrides) -> Subscriber:
    values = {
        "username": f"client_{uuid.uuid4().hex[:8]}",
        "first_name": "Test",
        "last_name": "User",
        "email": _unique_email(),
        "account_type": "agency",
    }
    values.update(overrides)
    subscriber = Subscriber(**values)
    db_session.add(subscriber)
    db_session.commit()
    db_session.refresh(subscriber)
    return subscriber


def add_messages(
    db_session,
    subscriber: Subscriber,
    standard: int = 0,
    manual: int = 0,
    when: datetime | None = None,
    reason: str = "flagged content",
) -> None:
    when = when or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
    for index in range(standard):
        db_session.add(
            Message(subscriber_id=subscriber.id, subject=f"message {index}", created_at=when)
        )
    for index in range(manual):
        db_session.add(
            Message(
                subscriber_id=subscriber.id,
                subject=f"review {index}",
                manual_review=True,
                manual_review_reason=reason,
                created_at=when,
            )
        )
    db_session.commit()


@pytest.fixture()
def subscriber(db_session):
    return make_subscriber(db_session)


@pytest.fixture()
def active_subscriber(db_session, subscriber):
    """Subscriber with 12 standard and 3 manual-review messages in March 2026."""
    add_messages(db_session, subscriber, standard=12, manual=3)
    return subscriber


@pytest.fixture()
def bill(db_session, active_subscriber):
    return billing_service.bills.create(
        db_session,
        BillCreate(
            subscriber_id=active_subscriber.id,
            period_start=MARCH_START,
            period_end=MARCH_END,
        ),
        created_by="admin-1",
    )


@pytest.fixture()
def document_store(tmp_path, monkeypatch):
    from app.services import file_storage

    store = file_storage.LocalDocumentStore(base_dir=tmp_path / "documents")
    monkeypatch.setattr(file_storage.document_store, "_base_dir", store._base_dir)
    return store


@pytest.fixture()
def fake_stripe():
    return FakeStripe()


@pytest.fixture()
def stripe_client(fake_stripe):
    client = StripeClient(secret_key="sk_test_" + "x" * 24, transport=fake_stripe.transport())
    yield client
    client.close()


def auth_headers(roles=("admin",), scopes=(), subject="admin-1") -> dict:
    from jose import jwt

    from app.config import settings

    token = jwt.encode(
        {"sub": subject, "typ": "access", "roles": list(roles), "scopes": list(scopes)},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def client(db_session, fake_stripe, document_store):
    from fastapi.testclient import TestClient

    from app.api.deps import get_stripe_client
    from app.db import get_db
    from app.main import app

    def _get_db():
        yield db_session

    def _get_stripe_client():
        stripe = StripeClient(secret_key="sk_test_" + "x" * 24, transport=fake_stripe.transport())
        try:
            yield stripe
        finally:
            stripe.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_stripe_client] = _get_stripe_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
