from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import ConflictError, EventOutOfOrderError, ValidationFailedError
from app.models.billing import (
    Dispute,
    DisputeStatus,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LedgerRefType,
    LineItemType,
    Payment,
    PaymentStatus,
    Refund,
)
from app.schemas.billing import CanonicalPaymentEvent
from app.services.billing.collaborators import get_collaborators
from app.services.billing.invoices import (
    can_transition,
    invoices,
    next_position,
    transition_invoice,
)
from app.services.billing.ledger import ledger
from app.services.billing.locks import billing_locks, customer_key
from app.services.billing.payments import get_payment
from app.services.payment_gateway import PaymentGateway, get_gateway
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def _payment_for(db: Session, event: CanonicalPaymentEvent, provider_payment_id: str) -> Payment:
    """Payment a reversal applies to. Raises while that payment is not recorded yet."""
    payment = get_payment(db, event.provider, provider_payment_id)
    if payment is None:
        raise EventOutOfOrderError(
            f"{event.provider_event_type} for unknown {event.provider} payment "
            f"{provider_payment_id}",
            details={
                "provider": event.provider,
                "provider_event_id": event.provider_event_id,
                "provider_payment_id": provider_payment_id,
            },
        )
    return payment


def _settled_payment_status(payment: Payment) -> PaymentStatus:
    if payment.amount_refunded_cents <= 0:
        return PaymentStatus.succeeded
    if payment.amount_refunded_cents >= payment.amount_cents:
        return PaymentStatus.refunded
    return PaymentStatus.partially_refunded


class Disputes:
    @staticmethod
    def handle_chargeback(db: Session, event: CanonicalPaymentEvent) -> Dispute:
        """Reverse a disputed payment: debit the ledger, mark the invoice uncollectible."""
        if event.dispute is None:
            raise ValidationFailedError("Dispute event carries no dispute")
        ref = event.dispute
        existing = db.scalars(
            select(Dispute).where(Dispute.provider_dispute_id == ref.provider_dispute_id)
        ).first()
        if existing:
            return existing
        payment = _payment_for(db, event, ref.provider_payment_id)

        invoice = payment.invoice
        with billing_locks.hold(customer_key(invoice.customer_id)):
            db.refresh(invoice)
            dispute = Dispute(
                invoice_id=invoice.id,
                payment_id=payment.id,
                provider_dispute_id=ref.provider_dispute_id,
                amount_cents=ref.amount_cents,
                status=DisputeStatus.open,
            )
            db.add(dispute)
            ledger.record_debit(
                db,
                invoice.customer_id,
                ref.amount_cents,
                LedgerRefType.chargeback,
                f"{event.provider}:{ref.provider_dispute_id}",
                invoice_id=invoice.id,
                description=f"Chargeback on invoice {invoice.number}",
            )
            invoice.amount_paid_cents -= ref.amount_cents
            if can_transition(invoice.status, InvoiceStatus.uncollectible):
                transition_invoice(invoice, InvoiceStatus.uncollectible)
            payment.status = PaymentStatus.disputed
            ledger.assert_consistent(db, invoice.customer_id)
            db.commit()
        db.refresh(dispute)
        logger.warning(
            "Chargeback %s on invoice %s",
            ref.provider_dispute_id,
            invoice.number,
            extra={"invoice_id": str(invoice.id), "provider": event.provider},
        )
        get_collaborators().suspend_customer(
            invoice.customer, f"chargeback {ref.provider_dispute_id}"
        )
        return dispute

    @staticmethod
    def handle_dispute_closed(db: Session, event: CanonicalPaymentEvent) -> Dispute:
        """Won disputes restore the payment; lost ones leave the write-off in place."""
        if event.dispute is None:
            raise ValidationFailedError("Dispute event carries no dispute")
        ref = event.dispute
        dispute = db.scalars(
            select(Dispute).where(Dispute.provider_dispute_id == ref.provider_dispute_id)
        ).first()
        if dispute is None:
            # Closed before we saw it open: apply the chargeback first.
            dispute = Disputes.handle_chargeback(db, event)
        if dispute.status != DisputeStatus.open:
            return dispute

        invoice = db.get(Invoice, dispute.invoice_id)
        payment = db.get(Payment, dispute.payment_id)
        with billing_locks.hold(customer_key(invoice.customer_id)):
            db.refresh(invoice)
            dispute.closed_at = datetime.now(UTC)
            if event.type == "dispute.won":
                dispute.status = DisputeStatus.won
                ledger.record_credit(
                    db,
                    invoice.customer_id,
                    dispute.amount_cents,
                    LedgerRefType.adjustment,
                    f"dispute:{event.provider}:{ref.provider_dispute_id}",
                    invoice_id=invoice.id,
                    description=f"Dispute won on invoice {invoice.number}",
                )
                invoice.amount_paid_cents += dispute.amount_cents
                if can_transition(invoice.status, InvoiceStatus.paid):
                    transition_invoice(invoice, InvoiceStatus.paid)
                payment.status = _settled_payment_status(payment)
            else:
                dispute.status = DisputeStatus.lost
            ledger.assert_consistent(db, invoice.customer_id)
            db.commit()
        db.refresh(dispute)
        logger.info(
            "Dispute %s closed as %s",
            ref.provider_dispute_id,
            dispute.status.value,
            extra={"invoice_id": str(invoice.id), "provider": event.provider},
        )
        return dispute


class Refunds(ListResponseMixin):
    @staticmethod
    def _apply(
        db: Session,
        invoice: Invoice,
        payment: Payment,
        provider_refund_id: str,
        amount_cents: int,
        reason: str | None,
    ) -> Refund:
        existing = db.scalars(
            select(Refund).where(Refund.provider_refund_id == provider_refund_id)
        ).first()
        if existing:
            return existing
        refund = Refund(
            invoice_id=invoice.id,
            payment_id=payment.id,
            provider_refund_id=provider_refund_id,
            amount_cents=amount_cents,
            reason=reason,
        )
        db.add(refund)
        db.add(
            InvoiceLineItem(
                invoice_id=invoice.id,
                position=next_position(invoice),
                type=LineItemType.refund,
                description=f"Refund {provider_refund_id}",
                quantity=1,
                unit_amount_cents=-amount_cents,
                amount_cents=-amount_cents,
                metadata_={"reason": reason} if reason else None,
            )
        )
        invoice.total_cents -= amount_cents
        invoice.amount_refunded_cents += amount_cents
        payment.amount_refunded_cents += amount_cents
        payment.status = _settled_payment_status(payment)
        ledger.record_credit(
            db,
            invoice.customer_id,
            amount_cents,
            LedgerRefType.refund,
            f"{payment.provider}:{provider_refund_id}",
            invoice_id=invoice.id,
            description=f"Refund on invoice {invoice.number}",
        )
        if invoice.amount_refunded_cents >= invoice.amount_paid_cents and can_transition(
            invoice.status, InvoiceStatus.void
        ):
            transition_invoice(invoice, InvoiceStatus.void)
        ledger.assert_consistent(db, invoice.customer_id)
        db.commit()
        db.refresh(refund)
        logger.info(
            "Refunded %s on invoice %s",
            amount_cents,
            invoice.number,
            extra={"invoice_id": str(invoice.id), "provider": payment.provider},
        )
        return refund

    @staticmethod
    def refund(
        db: Session,
        invoice_id: str,
        amount_cents: int | None = None,
        reason: str | None = None,
        gateway: PaymentGateway | None = None,
    ) -> Refund:
        """Refund a paid invoice through the provider. No amount means refund everything left."""
        invoice = invoices.get(db, invoice_id)
        with billing_locks.hold(customer_key(invoice.customer_id)):
            db.refresh(invoice)
            if invoice.status != InvoiceStatus.paid:
                raise ConflictError(
                    f"Only paid invoices can be refunded, not {invoice.status.value}"
                )
            candidates = [
                payment
                for payment in invoice.payments
                if payment.status
                in {PaymentStatus.succeeded, PaymentStatus.partially_refunded}
                and payment.amount_cents > payment.amount_refunded_cents
            ]
            if not candidates:
                raise ConflictError("Invoice has no refundable payment")
            payment = max(
                candidates,
                key=lambda item: (item.amount_cents - item.amount_refunded_cents, str(item.id)),
            )
            refundable = payment.amount_cents - payment.amount_refunded_cents
            amount = refundable if amount_cents is None else amount_cents
            if amount <= 0 or amount > refundable:
                raise ValidationFailedError(
                    "Refund amount exceeds the refundable balance",
                    details={"requested_cents": amount, "refundable_cents": refundable},
                )
            gateway = gateway or get_gateway(payment.provider)
            provider_refund_id = gateway.refund(
                payment.provider_payment_id,
                amount,
                idempotency_key=(
                    f"refund-{invoice.id}-{payment.amount_refunded_cents}-{amount}"
                ),
                reason=reason,
            )
            return Refunds._apply(db, invoice, payment, provider_refund_id, amount, reason)

    @staticmethod
    def handle_provider_refund(db: Session, event: CanonicalPaymentEvent) -> Refund:
        """Apply a refund issued at the provider. Refunds already recorded are skipped."""
        if event.refund is None:
            raise ValidationFailedError("Refund event carries no refund")
        ref = event.refund
        existing = db.scalars(
            select(Refund).where(Refund.provider_refund_id == ref.provider_refund_id)
        ).first()
        if existing:
            return existing
        payment = _payment_for(db, event, ref.provider_payment_id)
        invoice = payment.invoice
        with billing_locks.hold(customer_key(invoice.customer_id)):
            db.refresh(invoice)
            return Refunds._apply(
                db, invoice, payment, ref.provider_refund_id, ref.amount_cents, ref.reason
            )

    @staticmethod
    def list(
        db: Session, invoice_id: str | None, limit: int, offset: int
    ) -> tuple[list[Refund], int]:
        query = db.query(Refund)
        if invoice_id:
            query = query.filter(Refund.invoice_id == invoices.get(db, invoice_id).id)
        total = query.count()
        items = query.order_by(Refund.created_at.desc()).limit(limit).offset(offset).all()
        return list(items), total


disputes = Disputes()
refunds = Refunds()
