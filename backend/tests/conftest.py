"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import pytest

# Settings are read at import time; keep the app off PostgreSQL and give it a signing secret
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("RESEND_API_KEY", "re_test_key")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.api.webhooks import get_webhook_pool
from app.models import Base
from app.models.order import Order
from app.models.user import User
from app.schemas.webhooks import StripeWebhookEvent
from app.services.notification_service import NotificationDispatcher
from app.services.stripe_service import PaymentProvider
from app.services.webhook_service import build_event_dispatcher


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]

# Resend test email addresses - use these in ALL tests to avoid fake addresses
# See: https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"


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
def session_factory(db_session: Session):
    """Session factory over the same test database, for code that opens its own sessions"""
    return TestSessionLocal


class RecordingPool:
    """Stands in for the worker pool: records submitted events instead of processing them"""

    def __init__(self):
        self.events = []
        self.full = False
        self.depth = 0

    def submit(self, event):
        if self.full:
            return False
        self.events.append(event)
        return True


@pytest.fixture(scope="function")
def webhook_pool() -> RecordingPool:
    return RecordingPool()


@pytest.fixture(scope="function")
def client(webhook_pool: RecordingPool) -> Generator[TestClient, None, None]:
    """FastAPI test client with the worker pool replaced by a recording pool"""
    app.dependency_overrides[get_webhook_pool] = lambda: webhook_pool

    try:
        # Disable OpenTelemetry instrumentation in tests
        with patch('app.main.initialize_otel', return_value=False):
            with patch('app.main.setup_otel_logging', return_value=False):
                with patch('app.main.instrument_sqlalchemy'):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs deliveries"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture(scope="function")
def stripe_signature():
    return sign_payload


@pytest.fixture(scope="function")
def signed_delivery():
    """Return (body, headers) for a correctly signed webhook delivery"""
    def _build(event: dict, secret: str = WEBHOOK_SECRET):
        body = json.dumps(event)
        return body, {"stripe-signature": sign_payload(body, secret), "content-type": "application/json"}
    return _build


@pytest.fixture(scope="function")
def make_event():
    """Factory for webhook events as the dispatcher receives them"""
    counter = {"n": 0}

    def _make(event_type: str, data_object: dict, event_id: str = None, account: str = None) -> StripeWebhookEvent:
        counter["n"] += 1
        return StripeWebhookEvent.from_payload({
            "id": event_id or f"evt_test_{counter['n']}",
            "type": event_type,
            "account": account,
            "data": {"object": data_object},
        })
    return _make


@pytest.fixture(scope="function")
def provider() -> Mock:
    """Payment provider double; nothing found, write-backs succeed"""
    provider = Mock(spec=PaymentProvider)
    provider.configured = True
    provider.retrieve_payment_intent.return_value = None
    provider.update_payment_intent_metadata.return_value = True
    provider.retrieve_customer.return_value = None
    provider.retrieve_subscription.return_value = None
    provider.retrieve_account.return_value = {"id": "acct_platform"}
    return provider


@pytest.fixture(scope="function")
def send_receipt() -> Mock:
    return Mock(return_value=True)


@pytest.fixture(scope="function")
def send_tickets() -> Mock:
    return Mock(return_value=True)


@pytest.fixture(scope="function")
def notifier(send_receipt: Mock, send_tickets: Mock) -> NotificationDispatcher:
    return NotificationDispatcher(send_receipt=send_receipt, send_tickets=send_tickets)


@pytest.fixture(scope="function")
def dispatcher(db_session: Session, provider: Mock, notifier: NotificationDispatcher):
    """Fully wired event dispatcher over the test database"""
    return build_event_dispatcher(db_session, provider, notifier)


@pytest.fixture(scope="function")
def complete_metadata() -> dict:
    """Payment intent metadata carrying everything needed to build an order"""
    return {
        "sellerId": "seller_1",
        "productionId": "prod_1",
        "performanceId": "perf_1",
        "buyerId": "user_buyer",
        "customerEmail": RESEND_TEST_DELIVERED,
        "productionName": "Hamlet",
        "venueName": "Globe Theatre",
        "venueCity": "London",
        "venueState": "LDN",
        "venueZipCode": "SE1",
        "performanceDate": "2026-11-20",
        "performanceTime": "19:30",
        "baseUrl": "https://tickets.example.com",
        "tickets": json.dumps([
            {"seatId": "A1", "section": "Orchestra", "row": "A", "seatNumber": "1", "price": 2500},
            {"seatId": "A2", "section": "Orchestra", "row": "A", "seatNumber": "2", "price": 2500},
        ]),
    }


@pytest.fixture(scope="function")
def payment_intent():
    """Factory for payment_intent data objects"""
    def _build(pi_id: str = "pi_test123", metadata: dict = None, amount: int = 5000, customer: str = None) -> dict:
        return {
            "id": pi_id,
            "object": "payment_intent",
            "amount": amount,
            "currency": "usd",
            "customer": customer,
            "payment_method_types": ["card"],
            "metadata": metadata or {},
        }
    return _build


@pytest.fixture(scope="function")
def pending_order(db_session: Session) -> Order:
    """An order created by the storefront, awaiting payment"""
    order = Order(
        id="order_pending_1",
        buyer_id="user_buyer",
        seller_id="seller_1",
        production_id="prod_1",
        performance_id="perf_1",
        total_amount=5000,
        status="pending",
        payment_status="pending",
        customer_email=RESEND_TEST_DELIVERED,
        tickets=[],
        view_token="existing-token",
        base_url="https://www.stagepasspro.com",
        stripe_payment_intent_id="pi_existing",
    )
    db_session.add(order)
    db_session.commit()
    db_session.refresh(order)
    return order


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    user = User(
        id="user_buyer",
        email=RESEND_TEST_DELIVERED,
        display_name="Test Buyer",
        stripe_customer_id="cus_test123",
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def mock_stripe():
    """Mock the stripe module as seen by the provider client"""
    with patch('app.services.stripe_service.stripe') as mock_stripe_module:
        mock_stripe_module.PaymentIntent.retrieve = Mock(return_value={"id": "pi_test123", "metadata": {}})
        mock_stripe_module.PaymentIntent.modify = Mock(return_value={"id": "pi_test123"})
        mock_stripe_module.Customer.retrieve = Mock(return_value={
            "id": "cus_test123", "email": RESEND_TEST_DELIVERED, "metadata": {"userId": "user_buyer"}
        })
        mock_stripe_module.Subscription.retrieve = Mock(return_value={"id": "sub_test123", "metadata": {}})
        mock_stripe_module.Account.retrieve = Mock(return_value={"id": "acct_platform"})
        mock_stripe_module.SignatureVerificationError = type("SignatureVerificationError", (Exception,), {})
        yield mock_stripe_module


@pytest.fixture(scope="function")
def mock_email_service():
    """Mock email service (Resend) to avoid sending actual emails"""
    with patch('app.services.email_service.resend') as mock_resend:
        mock_resend.Emails.send = Mock(return_value={"id": "email_test123"})
        yield mock_resend
