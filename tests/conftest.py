"""Pytest configuration and fixtures"""

import os

# Must be set before the application modules read their settings
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["CHARGE_MONITORING_ENABLED"] = "false"
os.environ["API_KEY"] = ""
os.environ["ADMIN_API_KEY"] = "admin-test-key"
os.environ["BILLING_PLATFORM_URL"] = ""
os.environ["BILLING_PLATFORM_API_KEY"] = ""
os.environ["COURSE_PLATFORM_API_KEY"] = ""
os.environ["SENTRY_DSN"] = ""

from datetime import date
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mobilepay_bridge.api.dependencies import get_client, get_notifier
from mobilepay_bridge.clients.mobilepay_client import MobilePayClient
from mobilepay_bridge.database.database import Base, get_db
from mobilepay_bridge.database.models import (
    Agreement,
    AgreementStatus,
    Charge,
    ChargeStatus,
    Customer,
    SubscriptionLink,
)
from mobilepay_bridge.main import app
from mobilepay_bridge.services.notification_service import NotificationService

# Test database URL (in-memory SQLite)
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    SQLALCHEMY_TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def override_get_db(db_session):
    """Override get_db dependency"""
    def _get_db():
        try:
            yield db_session
        finally:
            pass
    return _get_db


@pytest.fixture
def mobilepay():
    """MobilePay client double; configure return values per test"""
    return AsyncMock(spec=MobilePayClient)


@pytest.fixture
def notifier():
    return AsyncMock(spec=NotificationService)


@pytest.fixture
def client(override_get_db, mobilepay, notifier):
    """Create test client"""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_client] = lambda: mobilepay
    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def customer(db_session):
    customer = Customer(
        email="anna@example.dk",
        phone="+4512345678",
        name="Anna Jensen",
        billing_customer_id="cus_test123",
    )
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    return customer


@pytest.fixture
def make_agreement(db_session, customer):
    """Factory for agreements owned by ``customer``"""
    counter = {"n": 0}

    def _make(status=AgreementStatus.active.value, interval_unit="MONTH", interval_count=1, amount=29900):
        counter["n"] += 1
        agreement = Agreement(
            customer_id=customer.id,
            mobilepay_agreement_id=f"agr_{counter['n']:03d}",
            status=status,
            interval_unit=interval_unit,
            interval_count=interval_count,
            amount=amount,
            currency="DKK",
            product_name="FamilyMind Månedligt Abonnement",
            product_description="Adgang til FamilyMind Academy med alle kurser og materialer",
        )
        db_session.add(agreement)
        db_session.commit()
        db_session.refresh(agreement)
        return agreement

    return _make


@pytest.fixture
def agreement(make_agreement):
    return make_agreement()


@pytest.fixture
def make_subscription(db_session, customer):
    def _make(agreement, next_billing_date: date, status="active", plan_type="monthly"):
        link = SubscriptionLink(
            customer_id=customer.id,
            agreement_id=agreement.id,
            payment_method="mobilepay",
            plan_type=plan_type,
            status=status,
            next_billing_date=next_billing_date,
        )
        db_session.add(link)
        db_session.commit()
        db_session.refresh(link)
        return link

    return _make


@pytest.fixture
def make_charge(db_session):
    counter = {"n": 0}

    def _make(agreement, due_date: date, status=ChargeStatus.pending.value, attempt=0):
        counter["n"] += 1
        charge = Charge(
            agreement_id=agreement.id,
            mobilepay_charge_id=f"chr_{counter['n']:03d}",
            amount=agreement.amount,
            currency=agreement.currency,
            description=f"{agreement.product_name} - Marts 2026",
            due_date=due_date,
            status=status,
            retry_days=5,
            attempt=attempt,
        )
        db_session.add(charge)
        db_session.commit()
        db_session.refresh(charge)
        return charge

    return _make
