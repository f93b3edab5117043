"""Tests for billing models and their database constraints."""

import uuid
from datetime import UTC, datetime

import pytest
from sqlalchemy.exc import IntegrityError

from app.models.billing import (
    Customer,
    InvoiceStatus,
    LedgerEntry,
    LedgerRefType,
    SubscriptionStatus,
    UsageEvent,
    WebhookEvent,
    WebhookEventStatus,
)


def test_customer_defaults_and_timestamps(db_session):
    customer = Customer(
        tenant_id="tenant-m",
        client_id=f"client-{uuid.uuid4().hex[:8]}",
        provider="stripe",
        name="Model Test",
        email="model@example.com",
    )
    db_session.add(customer)
    db_session.commit()
    db_session.refresh(customer)
    assert customer.currency == "usd"
    assert customer.is_active is True
    assert customer.created_at is not None
    assert customer.updated_at is not None


def test_customer_unique_per_tenant_client_provider(db_session, customer):
    db_session.add(
        Customer(
            tenant_id=customer.tenant_id,
            client_id=customer.client_id,
            provider=customer.provider,
            name="Twin",
            email="twin@example.com",
        )
    )
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_subscription_defaults(subscription):
    assert subscription.status == SubscriptionStatus.active
    assert subscription.current_period_end > subscription.current_period_start


def test_usage_event_key_is_unique(db_session, subscription):
    key = f"usage-{uuid.uuid4().hex}"
    for _ in range(2):
        db_session.add(
            UsageEvent(
                subscription_id=subscription.id,
                metric_key="api_calls",
                quantity=1,
                event_time=datetime(2026, 1, 2, tzinfo=UTC),
                idempotency_key=key,
            )
        )
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_usage_event_quantity_must_be_positive(db_session, subscription):
    db_session.add(
        UsageEvent(
            subscription_id=subscription.id,
            metric_key="api_calls",
            quantity=0,
            event_time=datetime(2026, 1, 2, tzinfo=UTC),
            idempotency_key=f"usage-{uuid.uuid4().hex}",
        )
    )
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_ledger_entry_must_be_single_sided(db_session, customer):
    db_session.add(
        LedgerEntry(
            customer_id=customer.id,
            debit_cents=100,
            credit_cents=100,
            ref_type=LedgerRefType.adjustment,
            ref_id=f"adj-{uuid.uuid4().hex}",
        )
    )
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_ledger_ref_is_unique(db_session, customer):
    ref_id = f"adj-{uuid.uuid4().hex}"
    db_session.add_all(
        [
            LedgerEntry(
                customer_id=customer.id,
                debit_cents=100,
                ref_type=LedgerRefType.adjustment,
                ref_id=ref_id,
            ),
            LedgerEntry(
                customer_id=customer.id,
                credit_cents=100,
                ref_type=LedgerRefType.adjustment,
                ref_id=ref_id,
            ),
        ]
    )
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_finalized_invoice_line_positions(db_session, subscription):
    from app.services.billing.invoices import invoices

    invoice = invoices.finalize(
        db_session,
        str(subscription.id),
        datetime(2026, 1, 1, tzinfo=UTC),
        datetime(2026, 2, 1, tzinfo=UTC),
    )
    assert invoice.status == InvoiceStatus.open
    assert [item.position for item in invoice.line_items] == [0]


def test_webhook_event_unique_per_provider(db_session):
    event_id = f"evt_{uuid.uuid4().hex}"
    for provider in ("stripe", "paystack"):
        db_session.add(
            WebhookEvent(
                provider=provider,
                event_id=event_id,
                event_type="invoice.paid",
                canonical_type="payment.succeeded",
            )
        )
    db_session.commit()
    db_session.add(
        WebhookEvent(
            provider="stripe",
            event_id=event_id,
            event_type="invoice.paid",
            canonical_type="payment.succeeded",
        )
    )
    with pytest.raises(IntegrityError):
        db_session.commit()
    db_session.rollback()


def test_webhook_event_defaults(db_session):
    row = WebhookEvent(
        provider="stripe",
        event_id=f"evt_{uuid.uuid4().hex}",
        event_type="invoice.paid",
        canonical_type="payment.succeeded",
    )
    db_session.add(row)
    db_session.commit()
    assert row.status == WebhookEventStatus.pending
    assert row.attempts == 0
