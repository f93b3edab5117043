"""Tests for webhook ingress, processing and redrive."""

import hashlib
import hmac
import json
import time
import uuid
from datetime import UTC, datetime

import pytest
from sqlalchemy import func, select

from app.errors import ConflictError, ValidationFailedError, WebhookVerificationError
from app.models.billing import (
    AlertKind,
    BillingAlert,
    InvoiceStatus,
    LedgerEntry,
    LedgerRefType,
    WebhookEvent,
    WebhookEventStatus,
)
from app.services.billing import webhooks as webhook_module
from app.services.billing.invoices import invoices
from app.services.billing.ledger import ledger
from app.services.billing.normalizers import normalize
from app.services.billing.webhooks import (
    MAX_ATTEMPTS,
    process_webhook_event,
    redrive_pending,
    webhook_events,
    webhook_ingress,
)

PERIOD_START = datetime(2026, 1, 1, tzinfo=UTC)
PERIOD_END = datetime(2026, 2, 1, tzinfo=UTC)


def _invoice_paid(invoice, amount=None, payment_id=None):
    return {
        "id": invoice.external_id,
        "amount_paid": invoice.total_cents if amount is None else amount,
        "amount_due": invoice.total_cents,
        "payment_intent": payment_id or f"pi_{uuid.uuid4().hex[:12]}",
        "customer": invoice.customer.external_id,
        "currency": "usd",
    }


def _payment_credits(db_session, customer_id):
    return db_session.scalar(
        select(func.count(LedgerEntry.id)).where(
            LedgerEntry.customer_id == customer_id,
            LedgerEntry.ref_type == LedgerRefType.payment,
        )
    )


class _RecordingDispatcher:
    def __init__(self, accept=True):
        self.accept = accept
        self.submitted = []

    def submit(self, routing_key, item):
        self.submitted.append((routing_key, item))
        return self.accept


# ── Verification ─────────────────────────────────────────


def test_stripe_signature_accepted(db_session, signed, stripe_event):
    body, headers = signed("stripe", stripe_event("customer.created", {"id": "cus_1"}))
    ack = webhook_ingress.ingest(db_session, "stripe", body, headers)
    assert ack.status == "ignored"


def test_stripe_signature_mismatch_rejected(db_session, signed, stripe_event):
    body, headers = signed("stripe", stripe_event("invoice.paid", {"id": "in_1"}))
    tampered = body.replace(b"in_1", b"in_2")
    with pytest.raises(WebhookVerificationError):
        webhook_ingress.ingest(db_session, "stripe", tampered, headers)


def test_stripe_signature_outside_tolerance_rejected(db_session, signed, stripe_event):
    stale = int(time.time()) - 3600
    body, headers = signed("stripe", stripe_event("invoice.paid", {"id": "in_1"}), stale)
    with pytest.raises(WebhookVerificationError) as exc_info:
        webhook_ingress.ingest(db_session, "stripe", body, headers)
    assert "tolerance" in exc_info.value.message


def test_missing_signature_rejected(db_session, stripe_event):
    body = json.dumps(stripe_event("invoice.paid", {"id": "in_1"})).encode()
    with pytest.raises(WebhookVerificationError):
        webhook_ingress.ingest(db_session, "stripe", body, {})


def test_paystack_signature_checked(db_session, signed):
    body, headers = signed("paystack", {"event": "charge.success", "data": {"id": 991}})
    assert webhook_ingress.ingest(db_session, "paystack", body, headers).status == "ignored"
    headers["x-paystack-signature"] = "0" * 128
    with pytest.raises(WebhookVerificationError):
        webhook_ingress.ingest(db_session, "paystack", body, headers)


def test_non_json_body_rejected(db_session):
    body = b"not json"
    signature = hmac.new(b"sk_test_paystack", body, hashlib.sha512).hexdigest()
    with pytest.raises(ValidationFailedError):
        webhook_ingress.ingest(db_session, "paystack", body, {"x-paystack-signature": signature})


# ── Ingress ──────────────────────────────────────────────


def test_accepted_event_is_stored_pending_and_submitted(
    db_session, signed, stripe_event, subscription
):
    invoice = invoices.finalize(db_session, str(subscription.id), PERIOD_START, PERIOD_END)
    payload = stripe_event("invoice.paid", _invoice_paid(invoice))
    body, headers = signed("stripe", payload)
    dispatcher = _RecordingDispatcher()

    ack = webhook_ingress.ingest(db_session, "stripe", body, headers, dispatcher=dispatcher)

    assert ack.status == "accepted"
    assert ack.correlation_id == f"stripe:{payload['id']}"
    row = db_session.scalars(
        select(WebhookEvent).where(WebhookEvent.event_id == payload["id"])
    ).one()
    assert row.status == WebhookEventStatus.pending
    assert row.canonical_type == "payment.succeeded"
    assert dispatcher.submitted == [(f"customer:{invoice.customer.external_id}", str(row.id))]


def test_duplicate_delivery_credits_once(db_session, deliver, stripe_event, subscription):
    invoice = invoices.finalize(db_session, str(subscription.id), PERIOD_START, PERIOD_END)
    payload = stripe_event("invoice.paid", _invoice_paid(invoice))

    first, row = deliver("stripe", payload)
    second, _ = deliver("stripe", payload)

    assert first.status == "accepted"
    assert second.status == "duplicate"
    assert row.status == WebhookEventStatus.processed
    assert _payment_credits(db_session, invoice.customer_id) == 1
    assert ledger.get_balance(db_session, invoice.customer_id) == 0


def test_duplicate_detected_from_database_after_cache_loss(
    db_session, deliver, stripe_event, subscription, idempotency_store
):
    invoice = invoices.finalize(db_session, str(subscription.id), PERIOD_START, PERIOD_END)
    payload = stripe_event("invoice.paid", _invoice_paid(invoice))
    deliver("stripe", payload)
    idempotency_store.release(f"webhook:stripe:{payload['id']}")

    ack, _ = deliver("stripe", payload)
    assert ack.status == "duplicate"
    assert _payment_credits(db_session, invoice.customer_id) == 1


def test_abandoned_reservation_asks_provider_to_retry(
    db_session, signed, stripe_event, idempotency_store
):
    payload = stripe_event("invoice.finalized", {"id": f"in_{uuid.uuid4().hex[:8]}"})
    body, headers = signed("stripe", payload)
    # A worker reserved the key and died before storing the row.
    idempotency_store.check_and_reserve(f"webhook:stripe:{payload['id']}")

    with pytest.raises(ConflictError):
        webhook_ingress.ingest(db_session, "stripe", body, headers)
    assert db_session.scalars(
        select(WebhookEvent).where(WebhookEvent.event_id == payload["id"])
    ).first() is None

    idempotency_store.release(f"webhook:stripe:{payload['id']}")
    assert webhook_ingress.ingest(db_session, "stripe", body, headers).status == "ignored"


def test_reserved_key_with_stored_row_is_duplicate(
    db_session, signed, stripe_event, idempotency_store
):
    payload = stripe_event("invoice.finalized", {"id": f"in_{uuid.uuid4().hex[:8]}"})
    body, headers = signed("stripe", payload)
    webhook_ingress.ingest(db_session, "stripe", body, headers)
    key = f"webhook:stripe:{payload['id']}"
    idempotency_store.release(key)
    idempotency_store.check_and_reserve(key)

    assert webhook_ingress.ingest(db_session, "stripe", body, headers).status == "duplicate"


def test_same_payment_under_new_event_id_credits_once(
    db_session, deliver, stripe_event, subscription
):
    invoice = invoices.finalize(db_session, str(subscription.id), PERIOD_START, PERIOD_END)
    obj = _invoice_paid(invoice, payment_id="pi_same")
    deliver("stripe", stripe_event("invoice.paid", obj))
    deliver("stripe", stripe_event("invoice.payment_succeeded", obj))
    assert _payment_credits(db_session, invoice.customer_id) == 1


def test_unknown_event_ignored_with_alert(db_session, deliver, stripe_event):
    ack, row = deliver("stripe", stripe_event("issuing_card.created", {"id": "ic_1"}))
    assert ack.status == "ignored"
    assert row.status == WebhookEventStatus.ignored
    alert = db_session.scalars(
        select(BillingAlert).where(
            BillingAlert.kind == AlertKind.unknown_event,
            BillingAlert.message.contains("issuing_card.created"),
        )
    ).first()
    assert alert is not None


def test_informational_event_ignored_without_alert(db_session, deliver, stripe_event):
    before = db_session.scalar(
        select(func.count(BillingAlert.id)).where(BillingAlert.kind == AlertKind.unknown_event)
    )
    ack, _ = deliver("stripe", stripe_event("charge.succeeded", {"id": "ch_1"}))
    after = db_session.scalar(
        select(func.count(BillingAlert.id)).where(BillingAlert.kind == AlertKind.unknown_event)
    )
    assert ack.status == "ignored"
    assert after == before


def test_paystack_payment_request_settles_invoice(
    db_session, deliver, paystack_subscription
):
    invoice = invoices.finalize(
        db_session, str(paystack_subscription.id), PERIOD_START, PERIOD_END
    )
    payload = {
        "event": "paymentrequest.success",
        "data": {
            "id": 4242,
            "request_code": invoice.external_id,
            "amount": invoice.total_cents,
            "currency": "USD",
            "offline_reference": "ps_ref_1",
            "paid_at": "2026-02-02T10:00:00.000Z",
        },
    }
    ack, row = deliver("paystack", payload)

    assert ack.event_id == "paymentrequest.success:4242"
    assert row.status == WebhookEventStatus.processed
    db_session.refresh(invoice)
    assert invoice.status == InvoiceStatus.paid
    assert ledger.get_balance(db_session, invoice.customer_id) == 0


# ── Processing & redrive ─────────────────────────────────


def test_processing_failure_is_recorded_and_redriven(
    db_session, signed, stripe_event, subscription, monkeypatch
):
    invoice = invoices.finalize(db_session, str(subscription.id), PERIOD_START, PERIOD_END)
    body, headers = signed("stripe", stripe_event("invoice.paid", _invoice_paid(invoice)))
    ack = webhook_ingress.ingest(db_session, "stripe", body, headers)
    row = db_session.scalars(select(WebhookEvent).where(WebhookEvent.event_id == ack.event_id)).one()

    original = webhook_module.route_event

    def flaky(db, event):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(webhook_module, "route_event", flaky)
    failed = process_webhook_event(db_session, str(row.id))
    assert failed.status == WebhookEventStatus.failed
    assert failed.attempts == 1
    assert "hiccup" in failed.error_message
    assert ledger.get_balance(db_session, invoice.customer_id) == invoice.total_cents

    monkeypatch.setattr(webhook_module, "route_event", original)
    redrive_pending(db_session)
    db_session.refresh(row)
    assert row.status == WebhookEventStatus.processed
    assert row.attempts == 2
    assert ledger.get_balance(db_session, invoice.customer_id) == 0


def test_redrive_skips_exhausted_events(db_session, signed, stripe_event, subscription, monkeypatch):
    invoice = invoices.finalize(db_session, str(subscription.id), PERIOD_START, PERIOD_END)
    body, headers = signed("stripe", stripe_event("invoice.paid", _invoice_paid(invoice)))
    ack = webhook_ingress.ingest(db_session, "stripe", body, headers)
    row = db_session.scalars(select(WebhookEvent).where(WebhookEvent.event_id == ack.event_id)).one()
    row.status = WebhookEventStatus.failed
    row.attempts = MAX_ATTEMPTS
    db_session.commit()

    redrive_pending(db_session)
    db_session.refresh(row)
    assert row.status == WebhookEventStatus.failed
    assert row.attempts == MAX_ATTEMPTS


def test_redrive_submits_to_dispatcher(db_session, signed, stripe_event, subscription):
    invoice = invoices.finalize(db_session, str(subscription.id), PERIOD_START, PERIOD_END)
    body, headers = signed("stripe", stripe_event("invoice.paid", _invoice_paid(invoice)))
    full = _RecordingDispatcher(accept=False)
    ack = webhook_ingress.ingest(db_session, "stripe", body, headers, dispatcher=full)
    assert ack.status == "accepted"

    dispatcher = _RecordingDispatcher()
    assert redrive_pending(db_session, dispatcher) >= 1
    row = db_session.scalars(select(WebhookEvent).where(WebhookEvent.event_id == ack.event_id)).one()
    assert str(row.id) in [item for _, item in dispatcher.submitted]


def test_processing_is_idempotent(db_session, deliver, stripe_event, subscription):
    invoice = invoices.finalize(db_session, str(subscription.id), PERIOD_START, PERIOD_END)
    _, row = deliver("stripe", stripe_event("invoice.paid", _invoice_paid(invoice)))
    again = process_webhook_event(db_session, str(row.id))
    assert again.attempts == 1
    assert _payment_credits(db_session, invoice.customer_id) == 1


def test_list_webhook_events_filters(db_session, deliver, stripe_event):
    deliver("stripe", stripe_event("invoice.finalized", {"id": "in_list"}))
    items, total = webhook_events.list(
        db_session, "stripe", "ignored", "invoice.finalized", "created_at", "desc", 50, 0
    )
    assert total >= 1
    assert all(item.event_type == "invoice.finalized" for item in items)


# ── Normalization ────────────────────────────────────────


def test_stripe_dispute_closed_maps_outcome():
    payload = {
        "id": "evt_1",
        "type": "charge.dispute.closed",
        "created": 1767225600,
        "data": {"object": {"id": "dp_1", "amount": 100, "payment_intent": "pi_1", "status": "won"}},
    }
    assert normalize("stripe", payload).type == "dispute.won"
    payload["data"]["object"]["status"] = "lost"
    assert normalize("stripe", payload).type == "dispute.lost"
    payload["data"]["object"]["status"] = "warning_closed"
    assert normalize("stripe", payload).type == "unknown"


def test_stripe_refund_uses_latest_refund():
    payload = {
        "id": "evt_2",
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": "ch_1",
                "payment_intent": "pi_9",
                "refunds": {"data": [{"id": "re_9", "amount": 250, "reason": "requested_by_customer"}]},
            }
        },
    }
    event = normalize("stripe", payload)
    assert event.type == "refund.succeeded"
    assert event.refund.provider_refund_id == "re_9"
    assert event.refund.provider_payment_id == "pi_9"
    assert event.refund.amount_cents == 250


def test_payment_and_reversals_share_customer_routing_key():
    paid = normalize(
        "stripe",
        {
            "id": "evt_3",
            "type": "invoice.paid",
            "data": {
                "object": {
                    "id": "in_7",
                    "amount_paid": 100,
                    "payment_intent": "pi_7",
                    "customer": "cus_7",
                }
            },
        },
    )
    dispute = normalize(
        "stripe",
        {
            "id": "evt_4",
            "type": "charge.dispute.created",
            "data": {
                "object": {
                    "id": "dp_7",
                    "amount": 100,
                    "charge": {"id": "ch_7", "customer": "cus_7"},
                    "payment_intent": "pi_7",
                }
            },
        },
    )
    refund = normalize(
        "stripe",
        {
            "id": "evt_5",
            "type": "charge.refunded",
            "data": {
                "object": {
                    "id": "ch_7",
                    "payment_intent": "pi_7",
                    "amount_refunded": 50,
                    "customer": "cus_7",
                }
            },
        },
    )
    assert paid.routing_key() == dispute.routing_key() == refund.routing_key() == "customer:cus_7"


def test_paystack_event_without_object_id_uses_digest():
    payload = {"event": "transfer.success", "data": {"amount": 10}}
    first = normalize("paystack", payload)
    second = normalize("paystack", payload)
    assert first.provider_event_id == second.provider_event_id
    assert first.provider_event_id.startswith("transfer.success:")


def test_malformed_payload_rejected():
    with pytest.raises(ValidationFailedError):
        normalize("stripe", {"type": "invoice.paid"})
    with pytest.raises(ValidationFailedError):
        normalize("stripe", {"id": "evt", "type": "invoice.paid", "data": {"object": {}}})
    with pytest.raises(ValidationFailedError):
        normalize("adyen", {})
