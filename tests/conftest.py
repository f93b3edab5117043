import hashlib
import hmac
import json
import os
import time
import uuid
from datetime import UTC, datetime
from unittest.mock import MagicMock

# Configure the app for an in-memory database BEFORE any app imports
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["IDEMPOTENCY_BACKEND"] = "memory"
os.environ["DISPATCHER_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_stripe"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_paystack"
os.environ["GATEWAY_RETRY_MAX_WAIT"] = "0"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app.db import Base, get_engine  # noqa: E402
from app.models.billing import Customer, Plan, Subscription  # noqa: E402
from app.schemas.billing import (  # noqa: E402
    CustomerCreate,
    PlanCreate,
    SubscriptionCreate,
    UsageEventCreate,
)
from app.services.billing.collaborators import set_collaborators  # noqa: E402
from app.services.billing.customers import customers  # noqa: E402
from app.services.billing.idempotency import (  # noqa: E402
    MemoryIdempotencyStore,
    set_idempotency_store,
)
from app.services.billing.plans import plans  # noqa: E402
from app.services.billing.subscriptions import subscriptions  # noqa: E402
from app.services.billing.usage import usage_events  # noqa: E402
from app.services.payment_gateway import (  # noqa: E402
    PaymentGateway,
    PaystackGateway,
    StripeGateway,
    set_gateway,
)

# Create all tables
Base.metadata.create_all(get_engine())

PERIOD_START = datetime(2026, 1, 1, tzinfo=UTC)
PERIOD_END = datetime(2026, 2, 1, tzinfo=UTC)


@pytest.fixture(scope="session")
def engine():
    return get_engine()


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def idempotency_store():
    store = MemoryIdempotencyStore(ttl_seconds=3600, max_entries=10_000)
    set_idempotency_store(store)
    yield store
    set_idempotency_store(None)


def _fake_gateway(provider: str, verifier: PaymentGateway) -> MagicMock:
    gateway = MagicMock(spec=PaymentGateway)
    gateway.provider = provider
    gateway.create_customer.side_effect = lambda *a, **kw: f"cus_{uuid.uuid4().hex[:12]}"
    gateway.create_subscription.side_effect = lambda *a, **kw: f"sub_{uuid.uuid4().hex[:12]}"
    gateway.create_invoice.side_effect = lambda *a, **kw: f"in_{uuid.uuid4().hex[:12]}"
    gateway.finalize_invoice.side_effect = lambda draft_id: draft_id
    gateway.refund.side_effect = lambda *a, **kw: f"re_{uuid.uuid4().hex[:12]}"
    gateway.list_payments.return_value = []
    # Signatures are checked by the real adapter so webhook tests sign payloads for real.
    gateway.verify_webhook.side_effect = verifier.verify_webhook
    return gateway


@pytest.fixture(autouse=True)
def stripe_gateway():
    gateway = _fake_gateway(
        "stripe", StripeGateway(secret_key="sk_test_stripe", webhook_secret="whsec_test")
    )
    set_gateway("stripe", gateway)
    yield gateway
    set_gateway("stripe", None)


@pytest.fixture(autouse=True)
def paystack_gateway():
    gateway = _fake_gateway("paystack", PaystackGateway(secret_key="sk_test_paystack"))
    set_gateway("paystack", gateway)
    yield gateway
    set_gateway("paystack", None)


@pytest.fixture()
def collaborators():
    fake = MagicMock()
    set_collaborators(fake)
    yield fake
    set_collaborators(None)


# ============ Billing fixtures ============


@pytest.fixture()
def customer(db_session) -> Customer:
    return customers.create(
        db_session,
        CustomerCreate(
            tenant_id="tenant-1",
            client_id=f"client-{uuid.uuid4().hex[:8]}",
            provider="stripe",
            name="Ada Lovelace",
            email="ada@example.com",
        ),
    )


@pytest.fixture()
def paystack_customer(db_session) -> Customer:
    return customers.create(
        db_session,
        CustomerCreate(
            tenant_id="tenant-1",
            client_id=f"client-{uuid.uuid4().hex[:8]}",
            provider="paystack",
            name="Chinua Achebe",
            email="chinua@example.com",
        ),
    )


@pytest.fixture()
def plan(db_session) -> Plan:
    """9,900 base, 10k api calls included, then 1 cent per call."""
    return plans.create(
        db_session,
        PlanCreate(
            name=f"Starter {uuid.uuid4().hex[:6]}",
            base_price_cents=9900,
            included_allowances={"api_calls": 10_000},
            overage_rules={"api_calls": {"mode": "fixed_rate", "rate_cents": "1"}},
        ),
    )


@pytest.fixture()
def subscription(db_session, customer, plan) -> Subscription:
    return subscriptions.create(
        db_session,
        SubscriptionCreate(customer_id=customer.id, plan_id=plan.id, period_start=PERIOD_START),
    )


@pytest.fixture()
def paystack_subscription(db_session, paystack_customer, plan) -> Subscription:
    return subscriptions.create(
        db_session,
        SubscriptionCreate(
            customer_id=paystack_customer.id, plan_id=plan.id, period_start=PERIOD_START
        ),
    )


@pytest.fixture()
def record_usage(db_session):
    def _record(subscription, quantity, metric_key="api_calls", when=None, vendor_cost="0"):
        return usage_events.record(
            db_session,
            UsageEventCreate(
                subscription_id=subscription.id,
                metric_key=metric_key,
                quantity=quantity,
                vendor_cost_cents=vendor_cost,
                event_time=when or datetime(2026, 1, 15, tzinfo=UTC),
                idempotency_key=f"usage-{uuid.uuid4().hex}",
            ),
        )

    return _record


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def client(db_session):
    """Create a test client with database dependency override."""
    from app.api.deps import get_db as api_get_db
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ============ Webhook helpers ============


def _stripe_headers(body: bytes, timestamp: int | None = None) -> dict[str, str]:
    ts = str(timestamp if timestamp is not None else int(time.time()))
    signature = hmac.new(b"whsec_test", ts.encode() + b"." + body, hashlib.sha256).hexdigest()
    return {"stripe-signature": f"t={ts},v1={signature}"}


def _paystack_headers(body: bytes) -> dict[str, str]:
    signature = hmac.new(b"sk_test_paystack", body, hashlib.sha512).hexdigest()
    return {"x-paystack-signature": signature}


@pytest.fixture()
def signed():
    """Encode a provider payload and sign it the way the provider would."""

    def _sign(provider, payload, timestamp=None):
        body = json.dumps(payload).encode()
        if provider == "stripe":
            return body, _stripe_headers(body, timestamp)
        return body, _paystack_headers(body)

    return _sign


@pytest.fixture()
def deliver(db_session, signed):
    """Ingest a webhook and process it inline, as the dispatcher would."""
    from app.models.billing import WebhookEvent
    from app.services.billing.webhooks import process_webhook_event, webhook_ingress

    def _deliver(provider, payload):
        body, headers = signed(provider, payload)
        ack = webhook_ingress.ingest(db_session, provider, body, headers)
        row = db_session.scalars(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider, WebhookEvent.event_id == ack.event_id
            )
        ).first()
        if ack.status == "accepted":
            row = process_webhook_event(db_session, str(row.id))
        return ack, row

    return _deliver


def _stripe_event(event_type, obj, event_id=None):
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": obj},
    }


@pytest.fixture()
def paid_invoice(db_session, subscription, deliver):
    """A finalized 9,900 invoice settled by Stripe payment ``pi_<invoice hex>``."""
    from app.services.billing.invoices import invoices

    invoice = invoices.finalize(db_session, str(subscription.id), PERIOD_START, PERIOD_END)
    deliver(
        "stripe",
        _stripe_event(
            "invoice.paid",
            {
                "id": invoice.external_id,
                "amount_paid": invoice.total_cents,
                "amount_due": invoice.total_cents,
                "payment_intent": f"pi_{invoice.id.hex}",
                "customer": invoice.customer.external_id,
                "currency": "usd",
            },
        ),
    )
    db_session.refresh(invoice)
    return invoice


@pytest.fixture()
def stripe_event():
    return _stripe_event
