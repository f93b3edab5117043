"""Tests for chargebacks, dispute outcomes and refunds."""

import uuid
from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from app.errors import ConflictError, GatewayError, ValidationFailedError
from app.models.billing import (
    AlertKind,
    BillingAlert,
    Dispute,
    DisputeStatus,
    InvoiceStatus,
    LineItemType,
    PaymentStatus,
    WebhookEventStatus,
)
from app.services.billing.disputes import refunds
from app.services.billing.invoices import invoices
from app.services.billing.ledger import ledger
from app.services.billing.payments import get_payment
from app.services.billing.webhooks import MAX_ATTEMPTS, process_webhook_event


def _dispute_event(
    stripe_event, invoice, dispute_id, event_type="charge.dispute.created", status="needs_response"
):
    return stripe_event(
        event_type,
        {
            "id": dispute_id,
            "amount": invoice.total_cents,
            "payment_intent": f"pi_{invoice.id.hex}",
            "status": status,
        },
    )


def test_chargeback_reverses_payment(db_session, deliver, stripe_event, paid_invoice, collaborators):
    dispute_id = f"dp_{paid_invoice.id.hex[:12]}"
    deliver("stripe", _dispute_event(stripe_event, paid_invoice, dispute_id))

    db_session.refresh(paid_invoice)
    dispute = db_session.scalars(
        select(Dispute).where(Dispute.provider_dispute_id == dispute_id)
    ).one()
    assert dispute.status == DisputeStatus.open
    assert paid_invoice.status == InvoiceStatus.uncollectible
    assert paid_invoice.amount_paid_cents == 0
    assert get_payment(db_session, "stripe", f"pi_{paid_invoice.id.hex}").status == PaymentStatus.disputed
    assert ledger.get_balance(db_session, paid_invoice.customer_id) == 9900
    assert ledger.assert_consistent(db_session, paid_invoice.customer_id) == 9900
    collaborators.suspend_customer.assert_called_once()


def test_chargeback_redelivery_is_idempotent(db_session, deliver, stripe_event, paid_invoice):
    dispute_id = f"dp_{paid_invoice.id.hex[:12]}"
    deliver("stripe", _dispute_event(stripe_event, paid_invoice, dispute_id))
    # Same dispute under a new provider event id.
    deliver("stripe", _dispute_event(stripe_event, paid_invoice, dispute_id))
    assert ledger.get_balance(db_session, paid_invoice.customer_id) == 9900


def test_dispute_won_restores_payment(db_session, deliver, stripe_event, paid_invoice):
    dispute_id = f"dp_{paid_invoice.id.hex[:12]}"
    deliver("stripe", _dispute_event(stripe_event, paid_invoice, dispute_id))
    deliver(
        "stripe",
        _dispute_event(stripe_event, paid_invoice, dispute_id, "charge.dispute.closed", "won"),
    )

    db_session.refresh(paid_invoice)
    dispute = db_session.scalars(
        select(Dispute).where(Dispute.provider_dispute_id == dispute_id)
    ).one()
    assert dispute.status == DisputeStatus.won
    assert dispute.closed_at is not None
    assert paid_invoice.status == InvoiceStatus.paid
    assert get_payment(db_session, "stripe", f"pi_{paid_invoice.id.hex}").status == PaymentStatus.succeeded
    assert ledger.get_balance(db_session, paid_invoice.customer_id) == 0


def test_dispute_lost_keeps_write_off(db_session, deliver, stripe_event, paid_invoice):
    dispute_id = f"dp_{paid_invoice.id.hex[:12]}"
    deliver("stripe", _dispute_event(stripe_event, paid_invoice, dispute_id))
    deliver(
        "stripe",
        _dispute_event(stripe_event, paid_invoice, dispute_id, "charge.dispute.closed", "lost"),
    )
    db_session.refresh(paid_invoice)
    assert paid_invoice.status == InvoiceStatus.uncollectible
    assert ledger.get_balance(db_session, paid_invoice.customer_id) == 9900
    assert ledger.assert_consistent(db_session, paid_invoice.customer_id) == 9900


def test_dispute_closed_before_opened_applies_chargeback(db_session, deliver, stripe_event, paid_invoice):
    dispute_id = f"dp_{paid_invoice.id.hex[:12]}"
    deliver(
        "stripe",
        _dispute_event(stripe_event, paid_invoice, dispute_id, "charge.dispute.closed", "lost"),
    )
    dispute = db_session.scalars(
        select(Dispute).where(Dispute.provider_dispute_id == dispute_id)
    ).one()
    assert dispute.status == DisputeStatus.lost
    assert ledger.get_balance(db_session, paid_invoice.customer_id) == 9900


def _orphan_dispute_alert(db_session, payment_id):
    return db_session.scalars(
        select(BillingAlert).where(
            BillingAlert.kind == AlertKind.unmatched_payment,
            BillingAlert.message.contains(payment_id),
        )
    ).first()


def test_dispute_for_unknown_payment_is_retried_then_alerts(db_session, deliver, stripe_event):
    payment_id = f"pi_orphan_{uuid.uuid4().hex[:8]}"
    _, row = deliver(
        "stripe",
        stripe_event(
            "charge.dispute.created",
            {"id": f"dp_{uuid.uuid4().hex[:8]}", "amount": 500, "payment_intent": payment_id},
        ),
    )
    assert row.status == WebhookEventStatus.failed
    assert row.attempts == 1
    assert _orphan_dispute_alert(db_session, payment_id) is None

    for _ in range(MAX_ATTEMPTS - 1):
        row = process_webhook_event(db_session, str(row.id))
    assert row.status == WebhookEventStatus.failed
    assert row.attempts == MAX_ATTEMPTS
    assert _orphan_dispute_alert(db_session, payment_id) is not None


def test_chargeback_before_payment_applies_once_payment_lands(
    db_session, deliver, stripe_event, subscription
):
    invoice = invoices.finalize(
        db_session,
        str(subscription.id),
        datetime(2026, 1, 1, tzinfo=UTC),
        datetime(2026, 2, 1, tzinfo=UTC),
    )
    dispute_id = f"dp_{invoice.id.hex[:12]}"
    _, dispute_row = deliver("stripe", _dispute_event(stripe_event, invoice, dispute_id))
    assert dispute_row.status == WebhookEventStatus.failed
    assert db_session.scalars(
        select(Dispute).where(Dispute.provider_dispute_id == dispute_id)
    ).first() is None

    deliver(
        "stripe",
        stripe_event(
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
    retried = process_webhook_event(db_session, str(dispute_row.id))

    assert retried.status == WebhookEventStatus.processed
    db_session.refresh(invoice)
    assert invoice.status == InvoiceStatus.uncollectible
    assert db_session.scalars(
        select(Dispute).where(Dispute.provider_dispute_id == dispute_id)
    ).one().status == DisputeStatus.open
    assert ledger.get_balance(db_session, invoice.customer_id) == invoice.total_cents
    assert ledger.assert_consistent(db_session, invoice.customer_id) == invoice.total_cents


def test_provider_refund_before_payment_is_deferred(db_session, deliver, stripe_event):
    payment_id = f"pi_late_{uuid.uuid4().hex[:8]}"
    _, row = deliver(
        "stripe",
        stripe_event(
            "charge.refunded",
            {
                "id": f"ch_{uuid.uuid4().hex[:8]}",
                "payment_intent": payment_id,
                "amount_refunded": 300,
                "customer": "cus_late",
            },
        ),
    )
    assert row.status == WebhookEventStatus.failed
    assert payment_id in row.error_message


# ── Refunds ──────────────────────────────────────────────


def test_partial_refund(db_session, paid_invoice, stripe_gateway):
    refund = refunds.refund(db_session, str(paid_invoice.id), 4000, reason="goodwill")

    db_session.refresh(paid_invoice)
    assert refund.amount_cents == 4000
    assert paid_invoice.status == InvoiceStatus.paid
    assert paid_invoice.total_cents == 5900
    assert paid_invoice.amount_refunded_cents == 4000
    assert paid_invoice.line_items[-1].type == LineItemType.refund
    assert get_payment(db_session, "stripe", f"pi_{paid_invoice.id.hex}").status == (
        PaymentStatus.partially_refunded
    )
    stripe_gateway.refund.assert_called_once()
    assert ledger.get_balance(db_session, paid_invoice.customer_id) == -4000
    assert ledger.assert_consistent(db_session, paid_invoice.customer_id) == -4000


def test_full_refund_voids_invoice(db_session, paid_invoice):
    refunds.refund(db_session, str(paid_invoice.id))

    db_session.refresh(paid_invoice)
    assert paid_invoice.status == InvoiceStatus.void
    assert paid_invoice.total_cents == 0
    assert get_payment(db_session, "stripe", f"pi_{paid_invoice.id.hex}").status == PaymentStatus.refunded
    assert ledger.assert_consistent(db_session, paid_invoice.customer_id) == -9900


def test_refund_more_than_paid_rejected(db_session, paid_invoice, stripe_gateway):
    with pytest.raises(ValidationFailedError):
        refunds.refund(db_session, str(paid_invoice.id), 10_000)
    stripe_gateway.refund.assert_not_called()


def test_refund_open_invoice_rejected(db_session, subscription):
    invoice = invoices.finalize(
        db_session,
        str(subscription.id),
        datetime(2026, 1, 1, tzinfo=UTC),
        datetime(2026, 2, 1, tzinfo=UTC),
    )
    with pytest.raises(ConflictError):
        refunds.refund(db_session, str(invoice.id), 100)


def test_refund_gateway_failure_changes_nothing(db_session, paid_invoice, stripe_gateway):
    stripe_gateway.refund.side_effect = GatewayError("stripe down")
    with pytest.raises(GatewayError):
        refunds.refund(db_session, str(paid_invoice.id), 100)
    db_session.rollback()
    db_session.refresh(paid_invoice)
    assert paid_invoice.amount_refunded_cents == 0
    assert ledger.get_balance(db_session, paid_invoice.customer_id) == 0


def test_provider_refund_webhook_and_echo(db_session, deliver, stripe_event, paid_invoice, stripe_gateway):
    stripe_gateway.refund.side_effect = lambda *a, **kw: "re_local_1"
    refunds.refund(db_session, str(paid_invoice.id), 1000)

    # The provider echoes our own refund, then reports one issued from its dashboard.
    for refund_id, amount in (("re_local_1", 1000), ("re_dashboard_1", 500)):
        deliver(
            "stripe",
            stripe_event(
                "charge.refunded",
                {
                    "id": f"ch_{paid_invoice.id.hex[:8]}",
                    "payment_intent": f"pi_{paid_invoice.id.hex}",
                    "refunds": {"data": [{"id": refund_id, "amount": amount}]},
                },
            ),
        )

    items, total = refunds.list(db_session, str(paid_invoice.id), 50, 0)
    assert total == 2
    assert ledger.get_balance(db_session, paid_invoice.customer_id) == -1500
    assert ledger.assert_consistent(db_session, paid_invoice.customer_id) == -1500
