"""Append-only customer ledger.

Entries are only ever inserted. Writes flush inside the caller's transaction so
a ledger entry commits or rolls back together with the state change it records.
"""
import logging
import uuid

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.errors import LedgerDiscrepancyError, NotFoundError, ValidationFailedError
from app.metrics import LEDGER_ENTRIES
from app.models.billing import (
    Customer,
    Invoice,
    InvoiceStatus,
    LedgerEntry,
    LedgerRefType,
)
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    require_uuid,
    validate_enum,
)
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


class Ledger(ListResponseMixin):
    @staticmethod
    def _record(
        db: Session,
        *,
        customer_id: uuid.UUID,
        ref_type: LedgerRefType,
        ref_id: str,
        debit_cents: int = 0,
        credit_cents: int = 0,
        invoice_id: uuid.UUID | None = None,
        description: str | None = None,
    ) -> LedgerEntry:
        amount = debit_cents or credit_cents
        if amount <= 0:
            raise ValidationFailedError(
                "Ledger amount must be positive",
                details={"ref_type": ref_type.value, "ref_id": ref_id},
            )
        existing = db.scalars(
            select(LedgerEntry).where(
                LedgerEntry.ref_type == ref_type, LedgerEntry.ref_id == ref_id
            )
        ).first()
        if existing:
            logger.info(
                "Ledger entry %s:%s already recorded", ref_type.value, ref_id
            )
            return existing
        entry = LedgerEntry(
            customer_id=customer_id,
            invoice_id=invoice_id,
            debit_cents=debit_cents,
            credit_cents=credit_cents,
            ref_type=ref_type,
            ref_id=ref_id,
            description=description,
        )
        db.add(entry)
        db.flush()
        side = "debit" if debit_cents else "credit"
        LEDGER_ENTRIES.labels(side=side, ref_type=ref_type.value).inc()
        logger.info(
            "Ledger %s %s for %s:%s",
            side,
            amount,
            ref_type.value,
            ref_id,
            extra={
                "customer_id": str(customer_id),
                "invoice_id": str(invoice_id) if invoice_id else None,
            },
        )
        return entry

    @staticmethod
    def record_debit(
        db: Session,
        customer_id,
        amount_cents: int,
        ref_type: LedgerRefType,
        ref_id: str,
        *,
        invoice_id=None,
        description: str | None = None,
    ) -> LedgerEntry:
        return Ledger._record(
            db,
            customer_id=require_uuid(customer_id),
            ref_type=ref_type,
            ref_id=str(ref_id),
            debit_cents=amount_cents,
            invoice_id=coerce_uuid(invoice_id),
            description=description,
        )

    @staticmethod
    def record_credit(
        db: Session,
        customer_id,
        amount_cents: int,
        ref_type: LedgerRefType,
        ref_id: str,
        *,
        invoice_id=None,
        description: str | None = None,
    ) -> LedgerEntry:
        return Ledger._record(
            db,
            customer_id=require_uuid(customer_id),
            ref_type=ref_type,
            ref_id=str(ref_id),
            credit_cents=amount_cents,
            invoice_id=coerce_uuid(invoice_id),
            description=description,
        )

    @staticmethod
    def get_balance(db: Session, customer_id) -> int:
        """Amount owed by the customer: sum of debits minus sum of credits."""
        customer_uuid = require_uuid(customer_id)
        balance = db.scalar(
            select(
                func.coalesce(
                    func.sum(LedgerEntry.debit_cents - LedgerEntry.credit_cents), 0
                )
            ).where(LedgerEntry.customer_id == customer_uuid)
        )
        return int(balance or 0)

    @staticmethod
    def expected_balance(db: Session, customer_id) -> int:
        """Balance implied by invoices plus entries not tied to an invoice."""
        customer_uuid = require_uuid(customer_id)
        outstanding = db.scalar(
            select(
                func.coalesce(
                    func.sum(Invoice.total_cents - Invoice.amount_paid_cents), 0
                )
            ).where(
                Invoice.customer_id == customer_uuid,
                Invoice.status != InvoiceStatus.draft,
            )
        )
        unattached = db.scalar(
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (LedgerEntry.invoice_id.is_(None), LedgerEntry.debit_cents),
                            else_=0,
                        )
                        - case(
                            (LedgerEntry.invoice_id.is_(None), LedgerEntry.credit_cents),
                            else_=0,
                        )
                    ),
                    0,
                )
            ).where(LedgerEntry.customer_id == customer_uuid)
        )
        return int(outstanding or 0) + int(unattached or 0)

    @staticmethod
    def assert_consistent(db: Session, customer_id) -> int:
        db.flush()
        balance = Ledger.get_balance(db, customer_id)
        expected = Ledger.expected_balance(db, customer_id)
        if balance != expected:
            raise LedgerDiscrepancyError(
                "Ledger balance does not match invoice state",
                details={
                    "customer_id": str(customer_id),
                    "balance_cents": balance,
                    "expected_cents": expected,
                },
            )
        return balance

    @staticmethod
    def list(
        db: Session,
        customer_id: str,
        ref_type: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[LedgerEntry], int]:
        customer_uuid = coerce_uuid(customer_id)
        if not db.get(Customer, customer_uuid):
            raise NotFoundError("Customer not found")
        query = db.query(LedgerEntry).filter(LedgerEntry.customer_id == customer_uuid)
        if ref_type:
            query = query.filter(
                LedgerEntry.ref_type == validate_enum(ref_type, LedgerRefType, "ref_type")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": LedgerEntry.created_at},
        )
        return list(apply_pagination(query, limit, offset).all()), total

    list_entries = list


ledger = Ledger()
