"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from decimal import Decimal
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# The app engine is never used by tests, but it is created at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from faithflow.core.config import settings
from faithflow.db import redis as redis_module
from faithflow.db.session import get_db
from faithflow.main import app
from faithflow.models import Base
from faithflow.models.church import Church
from faithflow.models.donation import Donation
from faithflow.models.payment_intent import PaymentIntent
from faithflow.models.recurring_donation import RecurringDonation
from faithflow.models.staff_membership import StaffMembership
from faithflow.models.subscription_plan import SubscriptionPlan
from faithflow.models.subscription_plan_feature import SubscriptionPlanFeature
from faithflow.models.tenant import Tenant
from faithflow.services.providers import ProviderClients, get_provider_clients


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

STRIPE_TEST_WEBHOOK_SECRET = "whsec_test_giving"
STRIPE_TEST_PLATFORM_WEBHOOK_SECRET = "whsec_test_platform"
PAYSTACK_TEST_SECRET = "sk_test_paystack"
INTERNAL_TEST_TOKEN = "internal-test-token"

# Resend test address, see https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Swap the lazy Redis client for fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function", autouse=True)
def provider_settings():
    """Webhook secrets and internal token used by every test"""
    with patch.object(settings, "STRIPE_WEBHOOK_SECRET", STRIPE_TEST_WEBHOOK_SECRET), \
            patch.object(settings, "STRIPE_PLATFORM_WEBHOOK_SECRET", STRIPE_TEST_PLATFORM_WEBHOOK_SECRET), \
            patch.object(settings, "PAYSTACK_SECRET_KEY", PAYSTACK_TEST_SECRET), \
            patch.object(settings, "INTERNAL_API_TOKEN", INTERNAL_TEST_TOKEN), \
            patch.object(settings, "RESEND_API_KEY", ""), \
            patch.object(settings, "RESEND_FROM_EMAIL", ""):
        yield settings


@pytest.fixture(scope="function")
def stripe_gateway() -> Mock:
    """Mock StripeGateway (checkout sessions, refunds, subscriptions)"""
    gateway = Mock()
    gateway.create_checkout_session = Mock(return_value={
        "id": "cs_test123",
        "url": "https://checkout.stripe.com/c/pay/cs_test123",
    })
    gateway.create_refund = Mock(return_value={
        "id": "re_test123",
        "amount": 2500,
        "currency": "usd",
        "status": "succeeded",
        "reason": None,
    })
    gateway.retrieve_checkout_session = Mock(return_value={"id": "cs_test123", "payment_intent": "pi_test123"})
    gateway.retrieve_subscription = Mock(return_value={
        "id": "sub_test123",
        "customer": "cus_test123",
        "items": {"data": [{"price": {"id": "price_test123"}}]},
    })
    return gateway


@pytest.fixture(scope="function")
def paystack_client() -> Mock:
    """Mock PaystackClient"""
    client = Mock()
    client.initialize_transaction = Mock(return_value={
        "authorization_url": "https://checkout.paystack.com/test_access",
        "access_code": "test_access",
        "reference": "ps_ref_test",
    })
    client.verify_transaction = Mock(return_value={"status": "success"})
    client.create_plan = Mock(return_value="PLN_test123")
    client.fetch_subscription = Mock(return_value={
        "subscription_code": "SUB_test123",
        "email_token": "tok_test123",
        "customer": {"customer_code": "CUS_test123"},
        "plan": {"plan_code": "PLN_test123"},
    })
    client.disable_subscription = Mock(return_value={"status": True})
    client.create_refund = Mock(return_value={"id": 9001, "amount": 500000, "currency": "NGN", "status": "pending"})
    return client


@pytest.fixture(scope="function")
def providers(stripe_gateway, paystack_client) -> ProviderClients:
    """ProviderClients bound to the mock gateways"""
    return ProviderClients(
        stripe_factory=Mock(get=Mock(return_value=stripe_gateway)),
        paystack_factory=Mock(get=Mock(return_value=paystack_client)),
    )


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, providers) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and mock gateways"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider_clients] = lambda: providers

    try:
        with patch.object(settings, "SCHEDULER_ENABLED", False):
            with patch("faithflow.main.init_db"):
                with TestClient(app) as test_client:
                    yield test_client
    finally:
        app.dependency_overrides.clear()


# ============================================================================
# SIGNING HELPERS
# ============================================================================

def stripe_signature(payload: bytes, secret: str = STRIPE_TEST_WEBHOOK_SECRET) -> str:
    """Build a valid stripe-signature header for payload"""
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def paystack_signature(payload: bytes, secret: str = PAYSTACK_TEST_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def encode_event(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")


# ============================================================================
# FACTORIES
# ============================================================================

@pytest.fixture(scope="function")
def tenant(db_session: Session) -> Tenant:
    tenant = Tenant(name="Grace Chapel", slug="grace-chapel", status="ACTIVE")
    db_session.add(tenant)
    db_session.commit()
    db_session.refresh(tenant)
    return tenant


@pytest.fixture(scope="function")
def church(db_session: Session, tenant: Tenant) -> Church:
    church = Church(tenant_id=tenant.id, name="Grace Chapel Downtown", slug="grace-downtown", country_code="US")
    db_session.add(church)
    db_session.commit()
    db_session.refresh(church)
    return church


@pytest.fixture(scope="function")
def admin_staff(db_session: Session, church: Church) -> list:
    """Two ADMIN staff members and one VOLUNTEER"""
    rows = [
        StaffMembership(church_id=church.id, email=RESEND_TEST_DELIVERED, name="Pastor Ann", role="ADMIN"),
        StaffMembership(church_id=church.id, email="delivered+finance@resend.dev", name="Finance Lead", role="ADMIN"),
        StaffMembership(church_id=church.id, email="delivered+helper@resend.dev", name="Helper", role="VOLUNTEER"),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture(scope="function")
def growth_plan(db_session: Session) -> SubscriptionPlan:
    """Default plan with a member limit and one enabled flag"""
    plan = SubscriptionPlan(
        code="growth",
        name="Growth",
        is_default=True,
        is_active=True,
        monthly_price=Decimal("49.00"),
        currency="USD",
        stripe_price_id="price_growth",
        paystack_plan_code="PLN_growth",
    )
    db_session.add(plan)
    db_session.flush()
    db_session.add_all([
        SubscriptionPlanFeature(plan_id=plan.id, key="max_members", enabled=True, limit=2),
        SubscriptionPlanFeature(plan_id=plan.id, key="streaming_enabled", enabled=True, limit=None),
    ])
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture(scope="function")
def starter_plan(db_session: Session) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        code="starter",
        name="Starter",
        is_default=False,
        is_active=True,
        monthly_price=Decimal("19.00"),
        currency="USD",
        stripe_price_id="price_starter",
        paystack_plan_code="PLN_starter",
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


def make_intent(db: Session, church: Church, provider: str = "STRIPE", provider_ref: str = "cs_test123",
                amount: str = "100.00", currency: str = "USD", status: str = "PROCESSING", **fields) -> PaymentIntent:
    intent = PaymentIntent(
        church_id=church.id,
        amount=Decimal(amount),
        currency=currency,
        provider=provider,
        provider_ref=provider_ref,
        status=status,
        **fields
    )
    db.add(intent)
    db.commit()
    db.refresh(intent)
    return intent


def make_donation(db: Session, church: Church, intent: PaymentIntent = None, provider: str = "STRIPE",
                  provider_ref: str = "cs_test123", amount: str = "100.00", currency: str = "USD",
                  status: str = "PENDING", **fields) -> Donation:
    donation = Donation(
        church_id=church.id,
        payment_intent_id=intent.id if intent else None,
        amount=Decimal(amount),
        currency=currency,
        status=status,
        provider=provider,
        provider_ref=provider_ref,
        **fields
    )
    db.add(donation)
    db.commit()
    db.refresh(donation)
    return donation


def make_recurring(db: Session, church: Church, provider: str = "STRIPE", status: str = "ACTIVE",
                   interval: str = "MONTHLY", amount: str = "25.00", currency: str = "USD", **fields) -> RecurringDonation:
    recurring = RecurringDonation(
        church_id=church.id,
        amount=Decimal(amount),
        currency=currency,
        interval=interval,
        status=status,
        provider=provider,
        **fields
    )
    db.add(recurring)
    db.commit()
    db.refresh(recurring)
    return recurring
