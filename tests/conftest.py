"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import threading
import time
from typing import Any, Dict, Generator, List, Optional, Tuple
from unittest.mock import patch

# Settings are read at import time; point them at test values first
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["ADMIN_API_TOKEN"] = "test-admin-token"
os.environ["RESEND_API_KEY"] = ""
os.environ["SLACK_WEBHOOK_URL"] = ""
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from billing_webhooks.main import app
from billing_webhooks.api.webhooks import get_webhook_processor
from billing_webhooks.db.session import get_db
from billing_webhooks.models import Base
from billing_webhooks.models.plan import SubscriptionPlan
from billing_webhooks.models.user import User
from billing_webhooks.schemas.events import StripeCustomerObject
from billing_webhooks.services.notification_service import NotificationKind, NotificationService
from billing_webhooks.services.stripe_service import StripeGateway
from billing_webhooks.services.webhook_service import WebhookProcessor


TEST_WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "test-admin-token"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Processor sessions commit on their own; keep test-side objects readable afterwards
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=test_engine)


# ============================================================================
# TEST DOUBLES
# ============================================================================

class FakeStripeGateway(StripeGateway):
    """Real signature verification, canned customer lookups"""

    def __init__(self, customers: Optional[Dict[str, StripeCustomerObject]] = None):
        super().__init__(api_key="sk_test_fake", webhook_secret=TEST_WEBHOOK_SECRET, tolerance=300)
        self.customers = customers or {}
        self.retrieved: List[str] = []

    def retrieve_customer(self, customer_id: str) -> StripeCustomerObject:
        self.retrieved.append(customer_id)
        if customer_id not in self.customers:
            raise RuntimeError(f"No such customer: '{customer_id}'")
        return self.customers[customer_id]


class RecordingNotifier(NotificationService):
    """Collects notifications instead of sending them"""

    def __init__(self):
        self.sent: List[Tuple[NotificationKind, Dict[str, Any]]] = []

    def notify(self, kind, payload=None):
        self.sent.append((kind, payload or {}))

    def kinds(self) -> List[NotificationKind]:
        return [kind for kind, _ in self.sent]


class BlockingNotifier(RecordingNotifier):
    """Holds every send until the test releases it"""

    def __init__(self, release: threading.Event):
        super().__init__()
        self.release = release

    def notify(self, kind, payload=None):
        self.release.wait(timeout=5)
        super().notify(kind, payload)


class RecordingSleep:
    """Stands in for asyncio.sleep and records requested delays"""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def sign_payload(payload, secret: str = TEST_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    signature = hmac.new(secret.encode("utf-8"), f"{timestamp}.{body}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def file_session_factory(tmp_path) -> Generator[sessionmaker, None, None]:
    """File-backed SQLite with one connection per session, for concurrent deliveries"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'webhooks.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """Local user referenced by the Stripe customer's metadata"""
    user = User(id="u1", email="delivered@resend.dev", name="Test User")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope="function")
def pro_plan(db_session: Session) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        name="PRO",
        stripe_price_id="price_pro_monthly",
        max_users=10,
        max_projects=50,
        max_storage=10 * 1024 ** 3,
    )
    db_session.add(plan)
    db_session.commit()
    return plan


@pytest.fixture(scope="function")
def starter_plan(db_session: Session) -> SubscriptionPlan:
    plan = SubscriptionPlan(
        name="STARTER",
        stripe_price_id="price_starter_monthly",
        max_users=3,
        max_projects=5,
    )
    db_session.add(plan)
    db_session.commit()
    return plan


# ============================================================================
# COLLABORATORS
# ============================================================================

@pytest.fixture(scope="function")
def stripe_customer() -> StripeCustomerObject:
    return StripeCustomerObject(
        id="cus_123",
        email="delivered@resend.dev",
        name="Test User",
        metadata={"userId": "u1"},
    )


@pytest.fixture(scope="function")
def gateway(stripe_customer: StripeCustomerObject) -> FakeStripeGateway:
    return FakeStripeGateway(customers={stripe_customer.id: stripe_customer})


@pytest.fixture(scope="function")
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture(scope="function")
def processor(db_session, gateway, notifier, fake_sleep) -> WebhookProcessor:
    """Processor wired to the test database; depends on db_session so tables exist"""
    return WebhookProcessor(
        session_factory=TestSessionLocal,
        gateway=gateway,
        notifier=notifier,
        max_attempts=3,
        base_delay=1.0,
        timeout=10.0,
        high_value_threshold=5000,
        sleep=fake_sleep,
    )


# ============================================================================
# PAYLOAD BUILDERS
# ============================================================================

@pytest.fixture
def make_subscription():
    """Build a Stripe subscription object"""
    def _make(
        sub_id: str = "sub_1",
        customer: Any = "cus_123",
        status: str = "active",
        price_id: str = "price_pro_monthly",
        unit_amount: int = 2900,
        interval: str = "month",
        period_start: int = 1_700_000_000,
        period_end: int = 1_702_592_000,
        **overrides,
    ) -> Dict[str, Any]:
        subscription = {
            "id": sub_id,
            "object": "subscription",
            "customer": customer,
            "status": status,
            "cancel_at_period_end": False,
            "canceled_at": None,
            "ended_at": None,
            "trial_start": None,
            "trial_end": None,
            "items": {
                "object": "list",
                "data": [
                    {
                        "id": "si_1",
                        "price": {
                            "id": price_id,
                            "unit_amount": unit_amount,
                            "currency": "usd",
                            "recurring": {"interval": interval, "interval_count": 1},
                        },
                        "current_period_start": period_start,
                        "current_period_end": period_end,
                    }
                ],
            },
            "metadata": {},
        }
        subscription.update(overrides)
        return subscription
    return _make


@pytest.fixture
def make_invoice():
    """Build a Stripe invoice object"""
    def _make(
        invoice_id: str = "in_1",
        subscription: Optional[str] = "sub_1",
        amount_paid: int = 2900,
        amount_due: int = 2900,
        period_end: int = 1_705_270_400,
        **overrides,
    ) -> Dict[str, Any]:
        invoice = {
            "id": invoice_id,
            "object": "invoice",
            "subscription": subscription,
            "customer": "cus_123",
            "amount_paid": amount_paid,
            "amount_due": amount_due,
            "currency": "usd",
            "period_end": period_end,
        }
        invoice.update(overrides)
        return invoice
    return _make


@pytest.fixture
def make_event():
    """Wrap a provider object in an event envelope"""
    def _make(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1", **extra) -> Dict[str, Any]:
        event = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": 1_700_000_000,
            "livemode": False,
            "data": {"object": obj},
        }
        event.update(extra)
        return event
    return _make


@pytest.fixture
def signed():
    """Serialize an event and sign it the way Stripe does"""
    def _signed(event: Dict[str, Any], secret: str = TEST_WEBHOOK_SECRET,
                timestamp: Optional[int] = None) -> Tuple[bytes, str]:
        body = json.dumps(event).encode("utf-8")
        return body, sign_payload(body, secret=secret, timestamp=timestamp)
    return _signed


# ============================================================================
# HTTP
# ============================================================================

@pytest.fixture(scope="function")
def client(db_session: Session, processor: WebhookProcessor) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and test processor"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_webhook_processor] = lambda: processor

    try:
        # Disable OpenTelemetry and the real database in the lifespan
        with patch('billing_webhooks.main.initialize_otel', return_value=False):
            with patch('billing_webhooks.main.setup_otel_logging', return_value=False):
                with patch('billing_webhooks.main.instrument_sqlalchemy'):
                    with patch('billing_webhooks.main.init_db'):
                        with TestClient(app) as test_client:
                            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}
