import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.db import Base
from app.models.billing import SubscriptionPlan, SubscriptionStatus, TenantBilling
from tests.mocks import FakeGateway, FakeNotifier

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def _enable_foreign_keys(engine):
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture()
def engine():
    # Fresh database per test: the services commit, and a rollback after an
    # IntegrityError would otherwise undo an outer test transaction.
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def fake_gateway():
    return FakeGateway()


@pytest.fixture()
def fake_notifier():
    return FakeNotifier()


@pytest.fixture()
def make_tenant(db_session):
    """Factory for tenant billing records; defaults to a trial that ended yesterday with a card."""

    def _make(**overrides):
        values = {
            "tenant_id": uuid.uuid4(),
            "company_name": "Acme Plumbing",
            "billing_email": f"billing-{uuid.uuid4().hex[:8]}@example.com",
            "plan": SubscriptionPlan.starter,
            "subscription_status": SubscriptionStatus.trial,
            "trial_ends_at": NOW - timedelta(days=1),
            "gateway_customer_id": "CUST_EXISTING",
            "gateway_card_id": "ccof:existing",
            "card_brand": "VISA",
            "card_last4": "1111",
            "is_super_admin_owned": False,
            "failed_attempts": 0,
        }
        values.update(overrides)
        record = TenantBilling(**values)
        db_session.add(record)
        db_session.commit()
        db_session.refresh(record)
        return record

    return _make
