"""Webhook ingress and processing.

``WebhookIngress.ingest`` verifies, deduplicates, normalizes and persists a
delivery, then hands it to the dispatcher and acknowledges. Processing happens
off the request path in ``process_webhook_event``; rows stay ``pending`` until
processed so ``redrive_pending`` can pick them up after a crash or a full queue.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Protocol

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.db import SessionLocal
from app.errors import (
    ConflictError,
    EventOutOfOrderError,
    NotFoundError,
    ValidationFailedError,
    WebhookVerificationError,
)
from app.metrics import WEBHOOK_EVENTS
from app.models.billing import AlertKind, Customer, WebhookEvent, WebhookEventStatus
from app.schemas.billing import CanonicalPaymentEvent, WebhookAck
from app.services.billing.alerts import alerts
from app.services.billing.disputes import disputes, refunds
from app.services.billing.idempotency import IdempotencyState, get_idempotency_store
from app.services.billing.normalizers import is_informational, normalize
from app.services.billing.payments import payment_matcher
from app.services.billing.subscriptions import subscriptions
from app.services.common import apply_ordering, apply_pagination, coerce_uuid, validate_enum
from app.services.payment_gateway import PaymentGateway, get_gateway
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


class Dispatcher(Protocol):
    def submit(self, routing_key: str, item: str) -> bool: ...


def _stored_event(db: Session, provider: str, event_id: str) -> WebhookEvent | None:
    return db.scalars(
        select(WebhookEvent).where(
            WebhookEvent.provider == provider,
            WebhookEvent.event_id == event_id,
        )
    ).first()


class WebhookIngress:
    @staticmethod
    def ingest(
        db: Session,
        provider: str,
        body: bytes,
        headers: Mapping[str, str],
        dispatcher: Dispatcher | None = None,
        gateway: PaymentGateway | None = None,
        now: datetime | None = None,
    ) -> WebhookAck:
        gateway = gateway or get_gateway(provider)
        now = now or datetime.now(UTC)
        try:
            signed_at = gateway.verify_webhook(body, headers)
            if signed_at is not None and abs(
                (now - signed_at).total_seconds()
            ) > settings.webhook_tolerance_seconds:
                raise WebhookVerificationError(
                    "Webhook timestamp outside tolerance",
                    details={"tolerance_seconds": settings.webhook_tolerance_seconds},
                )
        except WebhookVerificationError as exc:
            WEBHOOK_EVENTS.labels(provider=provider, outcome="rejected").inc()
            logger.warning(
                "Rejected %s webhook: %s", provider, exc.message, extra={"provider": provider}
            )
            raise

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise ValidationFailedError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationFailedError("Webhook body must be a JSON object")
        event = normalize(provider, payload, now)
        log_extra = {
            "provider": provider,
            "event_id": event.provider_event_id,
            "correlation_id": event.correlation_id,
        }

        store = get_idempotency_store()
        dedup_key = f"webhook:{provider}:{event.provider_event_id}"
        state = store.check_and_reserve(dedup_key).state
        if state == IdempotencyState.completed:
            return WebhookIngress._duplicate(event)
        if state == IdempotencyState.in_progress:
            # Another delivery holds the key. Only acknowledge once its row exists,
            # otherwise the provider must retry.
            if _stored_event(db, provider, event.provider_event_id) is not None:
                return WebhookIngress._duplicate(event)
            logger.info("Webhook %s still being stored", event.provider_event_id, extra=log_extra)
            raise ConflictError(
                "Webhook delivery already in progress; retry later",
                details={"event_id": event.provider_event_id},
            )

        try:
            existing = _stored_event(db, provider, event.provider_event_id)
            if existing:
                store.store(dedup_key, {"status": "duplicate"})
                return WebhookIngress._duplicate(event)

            informational = is_informational(provider, event.provider_event_type)
            ignored = event.type == "unknown"
            row = WebhookEvent(
                provider=provider,
                event_id=event.provider_event_id,
                event_type=event.provider_event_type,
                canonical_type=event.type,
                correlation_id=event.correlation_id,
                payload=payload,
                canonical=event.model_dump(mode="json"),
                status=WebhookEventStatus.ignored if ignored else WebhookEventStatus.pending,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                store.store(dedup_key, {"status": "duplicate"})
                return WebhookIngress._duplicate(event)
            db.refresh(row)
        except Exception:
            store.release(dedup_key)
            raise
        store.store(dedup_key, {"status": "ignored" if ignored else "accepted"})

        if ignored:
            WEBHOOK_EVENTS.labels(provider=provider, outcome="ignored").inc()
            if not informational:
                alerts.raise_alert(
                    db,
                    AlertKind.unknown_event,
                    f"Unhandled {provider} event type {event.provider_event_type}",
                    details={"event_id": event.provider_event_id, "webhook_event_id": str(row.id)},
                )
            logger.info("Ignored %s event %s", provider, event.provider_event_type, extra=log_extra)
            return WebhookAck(
                status="ignored",
                event_id=event.provider_event_id,
                correlation_id=event.correlation_id,
            )

        WEBHOOK_EVENTS.labels(provider=provider, outcome="accepted").inc()
        if dispatcher is None or not dispatcher.submit(event.routing_key(), str(row.id)):
            logger.info("Webhook %s left pending for redrive", row.id, extra=log_extra)
        else:
            logger.info("Accepted %s event %s", provider, event.provider_event_type, extra=log_extra)
        return WebhookAck(
            status="accepted",
            event_id=event.provider_event_id,
            correlation_id=event.correlation_id,
        )

    @staticmethod
    def _duplicate(event: CanonicalPaymentEvent) -> WebhookAck:
        WEBHOOK_EVENTS.labels(provider=event.provider, outcome="duplicate").inc()
        logger.info(
            "Duplicate %s event %s",
            event.provider,
            event.provider_event_id,
            extra={"provider": event.provider, "event_id": event.provider_event_id},
        )
        return WebhookAck(
            status="duplicate",
            event_id=event.provider_event_id,
            correlation_id=event.correlation_id,
        )


def _sync_customer(db: Session, event: CanonicalPaymentEvent) -> None:
    if event.customer is None or not event.customer.provider_customer_id:
        return
    customer = db.scalars(
        select(Customer).where(
            Customer.provider == event.provider,
            Customer.external_id == event.customer.provider_customer_id,
        )
    ).first()
    if customer and event.customer.email and customer.email != event.customer.email:
        customer.email = event.customer.email
        db.flush()


def route_event(db: Session, event: CanonicalPaymentEvent) -> None:
    match event.type:
        case "payment.succeeded":
            payment_matcher.handle_payment_succeeded(db, event)
        case "payment.failed":
            payment_matcher.handle_payment_failed(db, event)
        case "refund.succeeded":
            refunds.handle_provider_refund(db, event)
        case "dispute.created":
            disputes.handle_chargeback(db, event)
        case "dispute.won" | "dispute.lost":
            disputes.handle_dispute_closed(db, event)
        case "subscription.updated" | "subscription.canceled":
            subscriptions.apply_provider_update(db, event)
        case "customer.updated":
            _sync_customer(db, event)
        case _:
            logger.debug("No handler for %s", event.type)


def process_webhook_event(db: Session, webhook_event_id: str) -> WebhookEvent:
    """Apply one stored event. Failures are recorded on the row for redrive."""
    row = db.get(WebhookEvent, coerce_uuid(webhook_event_id))
    if row is None:
        raise NotFoundError("Webhook event not found")
    if row.status in {WebhookEventStatus.processed, WebhookEventStatus.ignored}:
        return row
    event = CanonicalPaymentEvent.model_validate(row.canonical)
    log_extra = {
        "provider": row.provider,
        "event_id": row.event_id,
        "correlation_id": row.correlation_id,
    }
    try:
        route_event(db, event)
    except Exception as exc:
        db.rollback()
        row = db.get(WebhookEvent, row.id)
        row.attempts += 1
        row.status = WebhookEventStatus.failed
        row.error_message = str(exc)[:2000]
        db.commit()
        WEBHOOK_EVENTS.labels(provider=row.provider, outcome="failed").inc()
        if isinstance(exc, EventOutOfOrderError):
            logger.warning(
                "Webhook %s deferred on attempt %d: %s",
                row.id,
                row.attempts,
                exc.message,
                extra=log_extra,
            )
            if row.attempts >= MAX_ATTEMPTS:
                alerts.raise_alert(
                    db,
                    AlertKind.unmatched_payment,
                    exc.message,
                    details={**exc.details, "webhook_event_id": str(row.id)},
                )
            return row
        logger.error(
            "Webhook %s failed on attempt %d: %s",
            row.id,
            row.attempts,
            exc,
            exc_info=True,
            extra=log_extra,
        )
        return row
    row.attempts += 1
    row.status = WebhookEventStatus.processed
    row.error_message = None
    row.processed_at = datetime.now(UTC)
    db.commit()
    db.refresh(row)
    WEBHOOK_EVENTS.labels(provider=row.provider, outcome="processed").inc()
    logger.info("Processed webhook %s (%s)", row.id, row.canonical_type, extra=log_extra)
    return row


def run_webhook_event(webhook_event_id: str) -> None:
    """Dispatcher entry point: process one event in its own session."""
    db = SessionLocal()
    try:
        process_webhook_event(db, webhook_event_id)
    finally:
        db.close()


def redrive_pending(
    db: Session,
    dispatcher: Dispatcher | None = None,
    min_age_seconds: int = 0,
    limit: int = 500,
) -> int:
    """Re-submit pending and retryable failed events, oldest first.

    Without a dispatcher the events are processed inline in this session.
    """
    cutoff = datetime.now(UTC) - timedelta(seconds=min_age_seconds)
    rows = db.scalars(
        select(WebhookEvent)
        .where(
            or_(
                WebhookEvent.status == WebhookEventStatus.pending,
                (WebhookEvent.status == WebhookEventStatus.failed)
                & (WebhookEvent.attempts < MAX_ATTEMPTS),
            ),
            WebhookEvent.created_at <= cutoff,
        )
        .order_by(WebhookEvent.created_at)
        .limit(limit)
    ).all()
    count = 0
    for row in rows:
        row_id = str(row.id)
        if dispatcher is not None:
            event = CanonicalPaymentEvent.model_validate(row.canonical)
            if not dispatcher.submit(event.routing_key(), row_id):
                break
        else:
            process_webhook_event(db, row_id)
        count += 1
    if count:
        logger.info("Redrove %d webhook events", count)
    return count


class WebhookEvents(ListResponseMixin):
    @staticmethod
    def get(db: Session, item_id: str) -> WebhookEvent:
        item = db.get(WebhookEvent, coerce_uuid(item_id))
        if not item:
            raise NotFoundError("Webhook event not found")
        return item

    @staticmethod
    def list(
        db: Session,
        provider: str | None,
        status: str | None,
        event_type: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[WebhookEvent], int]:
        query = db.query(WebhookEvent)
        if provider:
            query = query.filter(WebhookEvent.provider == provider)
        if status:
            query = query.filter(
                WebhookEvent.status == validate_enum(status, WebhookEventStatus, "status")
            )
        if event_type:
            query = query.filter(WebhookEvent.event_type == event_type)
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": WebhookEvent.created_at, "event_type": WebhookEvent.event_type},
        )
        return list(apply_pagination(query, limit, offset).all()), total


webhook_ingress = WebhookIngress()
webhook_events = WebhookEvents()
