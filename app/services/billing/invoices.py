"""Invoice generation, finalization and lifecycle.

Finalizing a period prices the usage, stores the invoice with its line items,
debits the ledger, opens the invoice and marks the consumed usage in one
transaction. The provider invoice is created only after that commit, so a
gateway outage leaves a correct local invoice that can be pushed later.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.db import supports_row_locks
from app.errors import (
    ConflictError,
    GatewayError,
    LedgerDiscrepancyError,
    NotFoundError,
    ValidationFailedError,
)
from app.metrics import INVOICES_FINALIZED
from app.models.billing import (
    AlertKind,
    AlertSeverity,
    Customer,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LedgerRefType,
    LineItemType,
    Subscription,
    UsageEvent,
)
from app.schemas.billing import InvoicePreview, LineItem, ValuationContext
from app.services.billing.alerts import alerts
from app.services.billing.ledger import ledger
from app.services.billing.locks import billing_locks, customer_key, invoice_period_key
from app.services.billing.plans import plan_pricing
from app.services.billing.subscriptions import roll_period
from app.services.billing.usage import aggregate_usage
from app.services.billing.valuation import line_items_total, valuate
from app.services.common import (
    apply_ordering,
    apply_pagination,
    as_utc,
    coerce_uuid,
    validate_enum,
)
from app.services.payment_gateway import PaymentGateway, RemoteLine, get_gateway
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.draft: {InvoiceStatus.open, InvoiceStatus.void},
    InvoiceStatus.open: {
        InvoiceStatus.paid,
        InvoiceStatus.void,
        InvoiceStatus.uncollectible,
    },
    InvoiceStatus.paid: {InvoiceStatus.uncollectible, InvoiceStatus.void},
    InvoiceStatus.uncollectible: {InvoiceStatus.paid},
    InvoiceStatus.void: set(),
}


def can_transition(current: InvoiceStatus, target: InvoiceStatus) -> bool:
    return target in _TRANSITIONS[current]


def transition_invoice(invoice: Invoice, target: InvoiceStatus) -> None:
    """Move ``invoice`` to ``target`` or raise a conflict."""
    if not can_transition(invoice.status, target):
        raise ConflictError(
            f"Invoice cannot move from {invoice.status.value} to {target.value}",
            details={"invoice_id": str(invoice.id)},
        )
    now = datetime.now(UTC)
    invoice.status = target
    if target == InvoiceStatus.open:
        invoice.finalized_at = now
    elif target == InvoiceStatus.paid:
        invoice.paid_at = now
    elif target == InvoiceStatus.void:
        invoice.voided_at = now


def next_position(invoice: Invoice) -> int:
    return max((line.position for line in invoice.line_items), default=-1) + 1


def _invoice_number(invoice: Invoice) -> str:
    return (
        f"{settings.invoice_number_prefix}-"
        f"{as_utc(invoice.period_start):%Y%m%d}-{invoice.id.hex[:10].upper()}"
    )


def _find_for_period(
    db: Session, subscription_id, period_start: datetime, period_end: datetime
) -> Invoice | None:
    return db.scalars(
        select(Invoice).where(
            Invoice.subscription_id == subscription_id,
            Invoice.period_start == period_start,
            Invoice.period_end == period_end,
        )
    ).first()


def _find_overlapping(
    db: Session, subscription_id, period_start: datetime, period_end: datetime
) -> Invoice | None:
    return db.scalars(
        select(Invoice).where(
            Invoice.subscription_id == subscription_id,
            Invoice.status != InvoiceStatus.void,
            Invoice.period_start < period_end,
            Invoice.period_end > period_start,
        )
    ).first()


def _validate_period(period_start: datetime, period_end: datetime) -> tuple[datetime, datetime]:
    start, end = as_utc(period_start), as_utc(period_end)
    if end <= start:
        raise ValidationFailedError("period_end must be after period_start")
    return start, end


def _price_period(
    db: Session, subscription: Subscription, start: datetime, end: datetime
):
    plan = subscription.plan
    aggregates = aggregate_usage(db, subscription.id, start, end)
    context = ValuationContext(
        subscription_id=subscription.id,
        plan_name=plan.name,
        period_start=start,
        period_end=end,
    )
    items = valuate(context, plan_pricing(plan), aggregates)
    return aggregates, items


class Invoices(ListResponseMixin):
    @staticmethod
    def preview(
        db: Session, subscription_id: str, period_start: datetime, period_end: datetime
    ) -> InvoicePreview:
        subscription = db.get(Subscription, coerce_uuid(subscription_id))
        if not subscription:
            raise NotFoundError("Subscription not found")
        start, end = _validate_period(period_start, period_end)
        _, items = _price_period(db, subscription, start, end)
        return InvoicePreview(
            subscription_id=subscription.id,
            period_start=start,
            period_end=end,
            total_cents=line_items_total(items),
            line_items=items,
        )

    @staticmethod
    def finalize(
        db: Session,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        gateway: PaymentGateway | None = None,
    ) -> Invoice:
        """Finalize one subscription period. Repeating the call returns the same invoice."""
        subscription = db.get(Subscription, coerce_uuid(subscription_id))
        if not subscription:
            raise NotFoundError("Subscription not found")
        start, end = _validate_period(period_start, period_end)
        customer_id = subscription.customer_id

        with billing_locks.hold(invoice_period_key(subscription.id, start, end)):
            invoice = _find_for_period(db, subscription.id, start, end)
            if invoice is None:
                with billing_locks.hold(customer_key(customer_id)):
                    overlapping = _find_overlapping(db, subscription.id, start, end)
                    if overlapping is not None:
                        raise ConflictError(
                            "Period overlaps an invoiced period",
                            details={
                                "invoice_id": str(overlapping.id),
                                "period_start": as_utc(overlapping.period_start).isoformat(),
                                "period_end": as_utc(overlapping.period_end).isoformat(),
                            },
                        )
                    invoice = Invoices._finalize_locally(db, subscription, start, end)
            else:
                logger.info(
                    "Invoice already exists for period",
                    extra={"invoice_id": str(invoice.id)},
                )
            if invoice.status == InvoiceStatus.open and invoice.external_id is None:
                Invoices._finalize_remote(db, invoice, gateway)
        return invoice

    @staticmethod
    def _finalize_locally(
        db: Session, subscription: Subscription, start: datetime, end: datetime
    ) -> Invoice:
        customer_id = subscription.customer_id
        if supports_row_locks():
            db.execute(
                select(Customer.id).where(Customer.id == customer_id).with_for_update()
            )
        aggregates, items = _price_period(db, subscription, start, end)
        total = line_items_total(items)

        invoice = Invoice(
            customer_id=customer_id,
            subscription_id=subscription.id,
            status=InvoiceStatus.draft,
            currency=subscription.plan.currency,
            period_start=start,
            period_end=end,
            total_cents=total,
        )
        db.add(invoice)
        db.flush()
        invoice.number = _invoice_number(invoice)
        for position, item in enumerate(items):
            db.add(_line_item_row(invoice, position, item))

        if total > 0:
            ledger.record_debit(
                db,
                customer_id,
                total,
                LedgerRefType.invoice,
                str(invoice.id),
                invoice_id=invoice.id,
                description=f"Invoice {invoice.number}",
            )
        transition_invoice(invoice, InvoiceStatus.open)
        if total == 0:
            transition_invoice(invoice, InvoiceStatus.paid)

        event_ids = [event_id for aggregate in aggregates for event_id in aggregate.event_ids]
        if event_ids:
            db.execute(
                update(UsageEvent)
                .where(UsageEvent.id.in_(event_ids))
                .values(processed=True, invoice_id=invoice.id)
            )
        roll_period(subscription, start, end)

        try:
            ledger.assert_consistent(db, customer_id)
        except LedgerDiscrepancyError as exc:
            db.rollback()
            INVOICES_FINALIZED.labels(outcome="ledger_discrepancy").inc()
            alerts.raise_alert(
                db,
                AlertKind.ledger_discrepancy,
                "Ledger inconsistent while finalizing invoice; transaction rolled back",
                severity=AlertSeverity.critical,
                customer_id=customer_id,
                details=exc.details if isinstance(exc.details, dict) else None,
            )
            raise

        try:
            db.commit()
        except IntegrityError:
            # Another worker finalized the same period first.
            db.rollback()
            existing = _find_for_period(db, subscription.id, start, end)
            if existing is None:
                raise
            return existing
        db.refresh(invoice)
        INVOICES_FINALIZED.labels(outcome="finalized").inc()
        logger.info(
            "Finalized invoice %s total %s",
            invoice.number,
            total,
            extra={"invoice_id": str(invoice.id), "customer_id": str(customer_id)},
        )
        return invoice

    @staticmethod
    def _finalize_remote(
        db: Session, invoice: Invoice, gateway: PaymentGateway | None = None
    ) -> Invoice:
        customer = invoice.customer
        gateway = gateway or get_gateway(customer.provider)
        try:
            if not customer.external_id:
                raise GatewayError(
                    "Customer has no provider reference",
                    details={"customer_id": str(customer.id)},
                )
            if not invoice.external_draft_id:
                invoice.external_draft_id = gateway.create_invoice(
                    customer.external_id,
                    invoice.currency,
                    [
                        RemoteLine(line.description or line.type.value, line.amount_cents)
                        for line in invoice.line_items
                        if line.amount_cents
                    ],
                    idempotency_key=f"invoice-{invoice.id}",
                    metadata={"invoice_id": str(invoice.id), "number": invoice.number or ""},
                )
                db.commit()
            external_id = gateway.finalize_invoice(invoice.external_draft_id)
        except GatewayError as exc:
            db.rollback()
            INVOICES_FINALIZED.labels(outcome="gateway_failed").inc()
            alerts.raise_alert(
                db,
                AlertKind.gateway_finalize_failed,
                f"Provider finalize failed for invoice {invoice.number}: {exc.message}",
                customer_id=invoice.customer_id,
                invoice_id=invoice.id,
                details={"code": exc.code, "transient": exc.transient},
            )
            raise
        invoice.external_id = external_id
        db.commit()
        db.refresh(invoice)
        logger.info(
            "Invoice %s finalized at provider as %s",
            invoice.number,
            external_id,
            extra={"invoice_id": str(invoice.id), "provider": customer.provider},
        )
        return invoice

    @staticmethod
    def retry_finalize(
        db: Session, invoice_id: str, gateway: PaymentGateway | None = None
    ) -> Invoice:
        """Push an open invoice to the provider again. Local state is not touched."""
        invoice = Invoices.get(db, invoice_id)
        if invoice.external_id:
            return invoice
        if invoice.status != InvoiceStatus.open:
            raise ConflictError(
                f"Only open invoices can be finalized remotely, not {invoice.status.value}"
            )
        period_key = invoice_period_key(
            invoice.subscription_id,
            as_utc(invoice.period_start),
            as_utc(invoice.period_end),
        )
        with billing_locks.hold(period_key):
            db.refresh(invoice)
            if invoice.external_id:
                return invoice
            return Invoices._finalize_remote(db, invoice, gateway)

    @staticmethod
    def unfinalized(db: Session, limit: int = 100) -> list[Invoice]:
        """Open invoices that never reached the provider."""
        return list(
            db.scalars(
                select(Invoice)
                .where(
                    Invoice.status == InvoiceStatus.open,
                    Invoice.external_id.is_(None),
                )
                .order_by(Invoice.finalized_at)
                .limit(limit)
            ).all()
        )

    @staticmethod
    def void(db: Session, invoice_id: str, gateway: PaymentGateway | None = None) -> Invoice:
        """Void an open invoice, crediting its full total back to the customer."""
        invoice = Invoices.get(db, invoice_id)
        if invoice.status != InvoiceStatus.open:
            raise ConflictError(
                f"Only open invoices can be voided, not {invoice.status.value}"
            )
        with billing_locks.hold(customer_key(invoice.customer_id)):
            db.refresh(invoice)
            if invoice.status != InvoiceStatus.open:
                raise ConflictError(
                    f"Only open invoices can be voided, not {invoice.status.value}"
                )
            if invoice.external_id:
                gateway = gateway or get_gateway(invoice.customer.provider)
                gateway.void_invoice(invoice.external_id)

            amount = invoice.total_cents
            transition_invoice(invoice, InvoiceStatus.void)
            if amount > 0:
                db.add(
                    InvoiceLineItem(
                        invoice_id=invoice.id,
                        position=next_position(invoice),
                        type=LineItemType.credit,
                        description="Invoice voided",
                        quantity=1,
                        unit_amount_cents=-amount,
                        amount_cents=-amount,
                    )
                )
                invoice.total_cents = 0
                ledger.record_credit(
                    db,
                    invoice.customer_id,
                    amount,
                    LedgerRefType.adjustment,
                    f"void:{invoice.id}",
                    invoice_id=invoice.id,
                    description=f"Void of invoice {invoice.number}",
                )
            ledger.assert_consistent(db, invoice.customer_id)
            db.commit()
        db.refresh(invoice)
        logger.info("Voided invoice %s", invoice.number, extra={"invoice_id": str(invoice.id)})
        return invoice

    @staticmethod
    def get(db: Session, item_id: str) -> Invoice:
        item = db.get(Invoice, coerce_uuid(item_id))
        if not item:
            raise NotFoundError("Invoice not found")
        return item

    @staticmethod
    def get_by_external_id(db: Session, external_id: str) -> Invoice | None:
        return db.scalars(
            select(Invoice).where(
                (Invoice.external_id == external_id)
                | (Invoice.external_draft_id == external_id)
            )
        ).first()

    @staticmethod
    def list_line_items(db: Session, invoice_id: str) -> list[InvoiceLineItem]:
        invoice = Invoices.get(db, invoice_id)
        return list(invoice.line_items)

    @staticmethod
    def list(
        db: Session,
        customer_id: str | None,
        subscription_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[Invoice], int]:
        query = db.query(Invoice)
        if customer_id:
            query = query.filter(Invoice.customer_id == coerce_uuid(customer_id))
        if subscription_id:
            query = query.filter(Invoice.subscription_id == coerce_uuid(subscription_id))
        if status:
            query = query.filter(
                Invoice.status == validate_enum(status, InvoiceStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Invoice.created_at,
                "period_start": Invoice.period_start,
                "total_cents": Invoice.total_cents,
            },
        )
        return list(apply_pagination(query, limit, offset).all()), total


def _line_item_row(invoice: Invoice, position: int, item: LineItem) -> InvoiceLineItem:
    return InvoiceLineItem(
        invoice_id=invoice.id,
        position=position,
        type=LineItemType(item.type),
        metric_key=item.metric_key,
        description=item.description,
        quantity=item.quantity,
        unit_amount_cents=item.unit_amount_cents,
        amount_cents=item.amount_cents,
        capped=item.capped,
        metadata_=dict(item.metadata),
    )


invoices = Invoices()
