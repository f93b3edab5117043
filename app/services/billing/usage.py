from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import ConflictError, NotFoundError, ValidationFailedError
from app.models.billing import Subscription, SubscriptionStatus, UsageEvent
from app.schemas.billing import UsageAggregate, UsageEventCreate
from app.services.common import apply_ordering, apply_pagination, coerce_uuid
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def aggregate_usage(
    db: Session, subscription_id, period_start: datetime, period_end: datetime
) -> list[UsageAggregate]:
    """Sum unprocessed usage in ``[period_start, period_end)`` per metric key."""
    events = db.scalars(
        select(UsageEvent)
        .where(
            UsageEvent.subscription_id == coerce_uuid(subscription_id),
            UsageEvent.processed.is_(False),
            UsageEvent.event_time >= period_start,
            UsageEvent.event_time < period_end,
        )
        .order_by(UsageEvent.event_time, UsageEvent.id)
    ).all()

    quantities: dict[str, int] = defaultdict(int)
    costs: dict[str, Decimal] = defaultdict(Decimal)
    ids: dict[str, list] = defaultdict(list)
    for event in events:
        quantities[event.metric_key] += event.quantity
        costs[event.metric_key] += Decimal(event.vendor_cost_cents or 0)
        ids[event.metric_key].append(event.id)

    return [
        UsageAggregate(
            metric_key=metric_key,
            total_quantity=quantities[metric_key],
            vendor_cost_cents=costs[metric_key],
            event_count=len(ids[metric_key]),
            event_ids=tuple(ids[metric_key]),
        )
        for metric_key in sorted(quantities)
    ]


class UsageEvents(ListResponseMixin):
    @staticmethod
    def record(db: Session, payload: UsageEventCreate) -> UsageEvent:
        """Record a usage event. A repeated idempotency key returns the first event."""
        existing = db.scalars(
            select(UsageEvent).where(
                UsageEvent.idempotency_key == payload.idempotency_key
            )
        ).first()
        if existing:
            if existing.subscription_id != payload.subscription_id:
                raise ConflictError(
                    "Idempotency key already used for another subscription",
                    details={"idempotency_key": payload.idempotency_key},
                )
            return existing

        subscription = db.get(Subscription, payload.subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found")
        if subscription.status == SubscriptionStatus.canceled:
            raise ValidationFailedError("Cannot record usage on a canceled subscription")

        event = UsageEvent(**payload.model_dump())
        db.add(event)
        db.commit()
        db.refresh(event)
        logger.debug(
            "Recorded usage %s x%s for subscription %s",
            event.metric_key,
            event.quantity,
            event.subscription_id,
        )
        return event

    @staticmethod
    def get(db: Session, event_id: str) -> UsageEvent:
        event = db.get(UsageEvent, coerce_uuid(event_id))
        if not event:
            raise NotFoundError("Usage event not found")
        return event

    @staticmethod
    def list(
        db: Session,
        subscription_id: str | None,
        metric_key: str | None,
        processed: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[UsageEvent], int]:
        query = db.query(UsageEvent)
        if subscription_id:
            query = query.filter(UsageEvent.subscription_id == coerce_uuid(subscription_id))
        if metric_key:
            query = query.filter(UsageEvent.metric_key == metric_key)
        if processed is not None:
            query = query.filter(UsageEvent.processed == processed)
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"event_time": UsageEvent.event_time, "created_at": UsageEvent.created_at},
        )
        return list(apply_pagination(query, limit, offset).all()), total


usage_events = UsageEvents()
