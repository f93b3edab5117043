"""Match provider payments to invoices and reconcile provider state.

Handlers are idempotent on the provider payment id so a redelivered or
re-driven event never credits the ledger twice. Reconciliation only reports
and raises alerts; it never corrects data.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import ValidationFailedError
from app.models.billing import (
    AlertKind,
    AlertSeverity,
    Customer,
    Invoice,
    InvoiceStatus,
    LedgerRefType,
    Payment,
    PaymentStatus,
    SubscriptionStatus,
)
from app.schemas.billing import (
    CanonicalPaymentEvent,
    ReconciliationFinding,
    ReconciliationReport,
)
from app.services.billing.alerts import alerts
from app.services.billing.collaborators import get_collaborators
from app.services.billing.invoices import can_transition, invoices, transition_invoice
from app.services.billing.ledger import ledger
from app.services.billing.locks import billing_locks, customer_key
from app.services.common import as_utc
from app.services.payment_gateway import PaymentGateway, ProviderPayment, get_gateway

logger = logging.getLogger(__name__)

_FINDING_ALERTS = {
    "paid_at_provider_open_locally": (AlertKind.unmatched_invoice, AlertSeverity.warning),
    "paid_locally_missing_at_provider": (AlertKind.unmatched_invoice, AlertSeverity.critical),
    "amount_mismatch": (AlertKind.amount_mismatch, AlertSeverity.warning),
    "unknown_provider_payment": (AlertKind.unmatched_payment, AlertSeverity.warning),
    "ledger_inconsistent": (AlertKind.ledger_discrepancy, AlertSeverity.critical),
}


def get_payment(db: Session, provider: str, provider_payment_id: str) -> Payment | None:
    return db.scalars(
        select(Payment).where(
            Payment.provider == provider,
            Payment.provider_payment_id == provider_payment_id,
        )
    ).first()


class PaymentMatcher:
    @staticmethod
    def _invoice_for(db: Session, event: CanonicalPaymentEvent) -> Invoice | None:
        payment = event.payment
        reference = payment.provider_invoice_id if payment else None
        if reference is None and event.invoice is not None:
            reference = event.invoice.provider_invoice_id
        invoice = invoices.get_by_external_id(db, reference) if reference else None
        if invoice is None:
            alerts.raise_alert(
                db,
                AlertKind.missing_invoice,
                f"No local invoice for {event.provider} payment "
                f"{payment.provider_payment_id if payment else '?'}",
                details={
                    "provider": event.provider,
                    "provider_event_id": event.provider_event_id,
                    "provider_invoice_id": reference,
                    "amount_cents": payment.amount_cents if payment else None,
                },
            )
        return invoice

    @staticmethod
    def handle_payment_succeeded(db: Session, event: CanonicalPaymentEvent) -> Payment | None:
        if event.payment is None:
            raise ValidationFailedError("Payment event carries no payment")
        ref = event.payment
        existing = get_payment(db, event.provider, ref.provider_payment_id)
        if existing is not None and existing.status != PaymentStatus.failed:
            logger.info(
                "Payment %s already applied",
                ref.provider_payment_id,
                extra={"provider": event.provider, "event_id": event.provider_event_id},
            )
            return existing

        invoice = PaymentMatcher._invoice_for(db, event)
        if invoice is None:
            return None

        with billing_locks.hold(customer_key(invoice.customer_id)):
            db.refresh(invoice)
            existing = get_payment(db, event.provider, ref.provider_payment_id)
            if existing is not None and existing.status != PaymentStatus.failed:
                return existing

            outstanding = invoice.total_cents - invoice.amount_paid_cents
            if ref.amount_cents != outstanding or invoice.status not in {
                InvoiceStatus.open,
                InvoiceStatus.uncollectible,
            }:
                alerts.raise_alert(
                    db,
                    AlertKind.amount_mismatch,
                    f"Payment {ref.provider_payment_id} of {ref.amount_cents} does not "
                    f"settle invoice {invoice.number} ({outstanding} outstanding, "
                    f"status {invoice.status.value})",
                    customer_id=invoice.customer_id,
                    invoice_id=invoice.id,
                    details={
                        "paid_cents": ref.amount_cents,
                        "outstanding_cents": outstanding,
                        "status": invoice.status.value,
                    },
                    commit=False,
                )

            if existing is not None:
                payment = existing
                payment.amount_cents = ref.amount_cents
                payment.status = PaymentStatus.succeeded
                payment.failure_code = None
                payment.failure_message = None
            else:
                payment = Payment(
                    customer_id=invoice.customer_id,
                    invoice_id=invoice.id,
                    provider=event.provider,
                    provider_payment_id=ref.provider_payment_id,
                    amount_cents=ref.amount_cents,
                    currency=(ref.currency or invoice.currency).lower(),
                    status=PaymentStatus.succeeded,
                )
                db.add(payment)

            if ref.amount_cents > 0:
                ledger.record_credit(
                    db,
                    invoice.customer_id,
                    ref.amount_cents,
                    LedgerRefType.payment,
                    f"{event.provider}:{ref.provider_payment_id}",
                    invoice_id=invoice.id,
                    description=f"Payment for invoice {invoice.number}",
                )
            invoice.amount_paid_cents += ref.amount_cents
            if can_transition(invoice.status, InvoiceStatus.paid):
                transition_invoice(invoice, InvoiceStatus.paid)

            subscription = invoice.subscription
            if subscription.status == SubscriptionStatus.past_due:
                subscription.status = SubscriptionStatus.active

            ledger.assert_consistent(db, invoice.customer_id)
            db.commit()
        db.refresh(payment)
        logger.info(
            "Applied payment %s to invoice %s",
            ref.provider_payment_id,
            invoice.number,
            extra={"invoice_id": str(invoice.id), "provider": event.provider},
        )
        return payment

    @staticmethod
    def handle_payment_failed(db: Session, event: CanonicalPaymentEvent) -> Payment | None:
        if event.payment is None:
            raise ValidationFailedError("Payment event carries no payment")
        ref = event.payment
        existing = get_payment(db, event.provider, ref.provider_payment_id)
        if existing is not None:
            return existing

        invoice = PaymentMatcher._invoice_for(db, event)
        if invoice is None:
            return None

        with billing_locks.hold(customer_key(invoice.customer_id)):
            payment = Payment(
                customer_id=invoice.customer_id,
                invoice_id=invoice.id,
                provider=event.provider,
                provider_payment_id=ref.provider_payment_id,
                amount_cents=ref.amount_cents,
                currency=(ref.currency or invoice.currency).lower(),
                status=PaymentStatus.failed,
                failure_code=ref.failure_code,
                failure_message=ref.failure_message,
            )
            db.add(payment)
            subscription = invoice.subscription
            if subscription.status == SubscriptionStatus.active:
                subscription.status = SubscriptionStatus.past_due
            db.commit()
        db.refresh(payment)
        logger.warning(
            "Payment %s failed for invoice %s: %s",
            ref.provider_payment_id,
            invoice.number,
            ref.failure_code or "unknown",
            extra={"invoice_id": str(invoice.id), "provider": event.provider},
        )
        get_collaborators().payment_failed(invoice.customer, invoice)
        return payment

    @staticmethod
    def reconcile(
        db: Session,
        provider: str,
        window_start: datetime,
        window_end: datetime,
        gateway: PaymentGateway | None = None,
    ) -> ReconciliationReport:
        """Compare provider-reported payments with locally finalized invoices."""
        window_start, window_end = as_utc(window_start), as_utc(window_end)
        if window_end <= window_start:
            raise ValidationFailedError("window_end must be after window_start")
        gateway = gateway or get_gateway(provider)
        remote = [
            payment
            for payment in gateway.list_payments(window_start, window_end)
            if payment.status == "succeeded"
        ]
        remote_by_invoice: dict[str, list[ProviderPayment]] = defaultdict(list)
        unlinked: list[ProviderPayment] = []
        for payment in remote:
            if payment.provider_invoice_id:
                remote_by_invoice[payment.provider_invoice_id].append(payment)
            else:
                unlinked.append(payment)
        remote_ids = {payment.provider_payment_id for payment in remote}

        local = list(
            db.scalars(
                select(Invoice)
                .join(Customer, Customer.id == Invoice.customer_id)
                .where(
                    Customer.provider == provider,
                    Invoice.status != InvoiceStatus.draft,
                    Invoice.finalized_at >= window_start,
                    Invoice.finalized_at < window_end,
                )
                .order_by(Invoice.finalized_at)
            ).all()
        )

        findings: list[ReconciliationFinding] = []
        matched = 0
        for invoice in local:
            refs = [ref for ref in (invoice.external_id, invoice.external_draft_id) if ref]
            paid_remote: list[ProviderPayment] = []
            for ref in dict.fromkeys(refs):
                paid_remote.extend(remote_by_invoice.pop(ref, []))
            remote_total = sum(payment.amount_cents for payment in paid_remote)
            local_payment_ids = {
                payment.provider_payment_id
                for payment in invoice.payments
                if payment.status != PaymentStatus.failed
            }

            if paid_remote and invoice.status in {
                InvoiceStatus.open,
                InvoiceStatus.uncollectible,
            }:
                findings.append(
                    _finding("paid_at_provider_open_locally", invoice, remote_total)
                )
            elif paid_remote and invoice.status == InvoiceStatus.paid and (
                remote_total != invoice.amount_paid_cents
            ):
                findings.append(_finding("amount_mismatch", invoice, remote_total))
            elif (
                not paid_remote
                and invoice.status == InvoiceStatus.paid
                and local_payment_ids
                and not local_payment_ids & remote_ids
            ):
                findings.append(
                    _finding("paid_locally_missing_at_provider", invoice, None)
                )
            else:
                matched += 1

        leftovers = [p for group in remote_by_invoice.values() for p in group] + unlinked
        for payment in leftovers:
            if get_payment(db, provider, payment.provider_payment_id) is None:
                findings.append(
                    ReconciliationFinding(
                        kind="unknown_provider_payment",
                        provider_invoice_id=payment.provider_invoice_id,
                        provider_payment_id=payment.provider_payment_id,
                        provider_amount_cents=payment.amount_cents,
                    )
                )

        for customer_id in sorted({invoice.customer_id for invoice in local}, key=str):
            balance = ledger.get_balance(db, customer_id)
            expected = ledger.expected_balance(db, customer_id)
            if balance != expected:
                findings.append(
                    ReconciliationFinding(
                        kind="ledger_inconsistent",
                        customer_id=customer_id,
                        local_amount_cents=balance,
                        provider_amount_cents=expected,
                    )
                )

        for finding in findings:
            kind, severity = _FINDING_ALERTS[finding.kind]
            alerts.raise_alert(
                db,
                kind,
                f"Reconciliation: {finding.kind.replace('_', ' ')}",
                severity=severity,
                customer_id=finding.customer_id,
                invoice_id=finding.invoice_id,
                details=finding.model_dump(mode="json"),
                commit=False,
            )
        db.commit()
        logger.info(
            "Reconciled %s: %d invoices, %d provider payments, %d findings",
            provider,
            len(local),
            len(remote),
            len(findings),
            extra={"provider": provider},
        )
        return ReconciliationReport(
            provider=provider,
            window_start=window_start,
            window_end=window_end,
            invoices_checked=len(local),
            provider_payments=len(remote),
            matched=matched,
            findings=findings,
        )


def _finding(kind: str, invoice: Invoice, provider_amount: int | None) -> ReconciliationFinding:
    return ReconciliationFinding(
        kind=kind,
        invoice_id=invoice.id,
        customer_id=invoice.customer_id,
        provider_invoice_id=invoice.external_id or invoice.external_draft_id,
        local_amount_cents=invoice.amount_paid_cents,
        provider_amount_cents=provider_amount,
    )


payment_matcher = PaymentMatcher()
