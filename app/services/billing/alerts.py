import logging
from datetime import UTC, datetime

from sqlalchemy.orm import Session

from app.errors import NotFoundError
from app.metrics import BILLING_ALERTS
from app.models.billing import AlertKind, AlertSeverity, BillingAlert
from app.services.common import apply_ordering, apply_pagination, coerce_uuid, validate_enum
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


class Alerts(ListResponseMixin):
    @staticmethod
    def raise_alert(
        db: Session,
        kind: AlertKind,
        message: str,
        *,
        severity: AlertSeverity = AlertSeverity.warning,
        customer_id=None,
        invoice_id=None,
        details: dict | None = None,
        commit: bool = True,
    ) -> BillingAlert:
        """Persist an alert for a human to triage. Alerts never resolve themselves."""
        alert = BillingAlert(
            kind=kind,
            severity=severity,
            customer_id=coerce_uuid(customer_id),
            invoice_id=coerce_uuid(invoice_id),
            message=message,
            details=details,
        )
        db.add(alert)
        if commit:
            db.commit()
            db.refresh(alert)
        else:
            db.flush()
        BILLING_ALERTS.labels(kind=kind.value).inc()
        logger.error(
            "Billing alert %s: %s",
            kind.value,
            message,
            extra={
                "customer_id": str(customer_id) if customer_id else None,
                "invoice_id": str(invoice_id) if invoice_id else None,
            },
        )
        return alert

    @staticmethod
    def get(db: Session, alert_id: str) -> BillingAlert:
        alert = db.get(BillingAlert, coerce_uuid(alert_id))
        if not alert:
            raise NotFoundError("Alert not found")
        return alert

    @staticmethod
    def list(
        db: Session,
        kind: str | None,
        resolved: bool | None,
        customer_id: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[BillingAlert], int]:
        query = db.query(BillingAlert)
        if kind:
            query = query.filter(BillingAlert.kind == validate_enum(kind, AlertKind, "kind"))
        if resolved is not None:
            query = query.filter(BillingAlert.resolved == resolved)
        if customer_id:
            query = query.filter(BillingAlert.customer_id == coerce_uuid(customer_id))
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": BillingAlert.created_at, "kind": BillingAlert.kind},
        )
        return list(apply_pagination(query, limit, offset).all()), total

    @staticmethod
    def resolve(db: Session, alert_id: str) -> BillingAlert:
        alert = Alerts.get(db, alert_id)
        if not alert.resolved:
            alert.resolved = True
            alert.resolved_at = datetime.now(UTC)
            db.commit()
            db.refresh(alert)
            logger.info("Resolved billing alert %s", alert.id)
        return alert


alerts = Alerts()
