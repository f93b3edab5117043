from __future__ import annotations

import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import ConflictError, NotFoundError, ValidationFailedError
from app.models.billing import (
    Customer,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from app.schemas.billing import (
    CanonicalPaymentEvent,
    SubscriptionCreate,
    SubscriptionUpdate,
)
from app.services.common import (
    advance_period,
    apply_ordering,
    apply_pagination,
    as_utc,
    coerce_uuid,
    validate_enum,
)
from app.services.payment_gateway import PaymentGateway, get_gateway
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

# Provider subscription statuses mapped onto local ones.
_PROVIDER_STATUS = {
    "active": SubscriptionStatus.active,
    "trialing": SubscriptionStatus.active,
    "past_due": SubscriptionStatus.past_due,
    "unpaid": SubscriptionStatus.past_due,
    "attention": SubscriptionStatus.past_due,
    "paused": SubscriptionStatus.paused,
    "non-renewing": SubscriptionStatus.active,
    "canceled": SubscriptionStatus.canceled,
    "cancelled": SubscriptionStatus.canceled,
    "complete": SubscriptionStatus.canceled,
    "incomplete": SubscriptionStatus.incomplete,
    "incomplete_expired": SubscriptionStatus.canceled,
}


def _active_plan(db: Session, plan_id) -> Plan:
    plan = db.get(Plan, coerce_uuid(plan_id))
    if not plan:
        raise NotFoundError("Plan not found")
    if not plan.is_active:
        raise ValidationFailedError("Plan is not active")
    return plan


def roll_period(
    subscription: Subscription, period_start: datetime, period_end: datetime
) -> bool:
    """Advance the subscription when ``period`` is its current period."""
    if (
        as_utc(subscription.current_period_start) != as_utc(period_start)
        or as_utc(subscription.current_period_end) != as_utc(period_end)
        or subscription.status == SubscriptionStatus.canceled
    ):
        return False
    subscription.current_period_start = as_utc(period_end)
    subscription.current_period_end = advance_period(
        as_utc(period_end), subscription.billing_cycle.value
    )
    return True


class Subscriptions(ListResponseMixin):
    @staticmethod
    def create(
        db: Session, payload: SubscriptionCreate, gateway: PaymentGateway | None = None
    ) -> Subscription:
        customer = db.get(Customer, payload.customer_id)
        if not customer:
            raise NotFoundError("Customer not found")
        if not customer.is_active:
            raise ValidationFailedError("Customer is not active")
        plan = _active_plan(db, payload.plan_id)
        if plan.currency != customer.currency:
            raise ValidationFailedError(
                "Plan currency does not match customer currency",
                details={"plan": plan.currency, "customer": customer.currency},
            )

        start = as_utc(payload.period_start or datetime.now(UTC))
        external_id = None
        if plan.external_price_id and customer.external_id:
            gateway = gateway or get_gateway(customer.provider)
            external_id = gateway.create_subscription(
                customer.external_id, plan.external_price_id
            )
        item = Subscription(
            customer_id=customer.id,
            plan_id=plan.id,
            status=SubscriptionStatus.active,
            billing_cycle=plan.billing_cycle,
            current_period_start=start,
            current_period_end=advance_period(start, plan.billing_cycle.value),
            external_id=external_id,
        )
        db.add(item)
        db.commit()
        db.refresh(item)
        logger.info(
            "Created Subscription: %s",
            item.id,
            extra={"customer_id": str(customer.id)},
        )
        return item

    @staticmethod
    def get(db: Session, item_id: str) -> Subscription:
        item = db.get(Subscription, coerce_uuid(item_id))
        if not item:
            raise NotFoundError("Subscription not found")
        return item

    @staticmethod
    def update(
        db: Session,
        item_id: str,
        payload: SubscriptionUpdate,
        gateway: PaymentGateway | None = None,
    ) -> Subscription:
        """Change plan and/or pause or resume."""
        item = Subscriptions.get(db, item_id)
        if item.status == SubscriptionStatus.canceled:
            raise ConflictError("Subscription is canceled")
        data = payload.model_dump(exclude_unset=True)

        new_plan = None
        if data.get("plan_id") and data["plan_id"] != item.plan_id:
            new_plan = _active_plan(db, data["plan_id"])
            if new_plan.currency != item.plan.currency:
                raise ValidationFailedError("Plan currency does not match subscription")

        paused = None
        if data.get("status"):
            target = SubscriptionStatus(data["status"])
            if target == SubscriptionStatus.paused and item.status != SubscriptionStatus.paused:
                paused = True
            elif target == SubscriptionStatus.active and item.status == SubscriptionStatus.paused:
                paused = False
            elif target != item.status:
                raise ConflictError(
                    f"Cannot move subscription from {item.status.value} to {target.value}"
                )

        if item.external_id and (paused is not None or new_plan is not None):
            gateway = gateway or get_gateway(item.customer.provider)
            gateway.update_subscription(
                item.external_id,
                price_id=new_plan.external_price_id if new_plan else None,
                paused=paused,
            )

        if new_plan is not None:
            item.plan_id = new_plan.id
        if paused is True:
            item.status = SubscriptionStatus.paused
        elif paused is False:
            item.status = SubscriptionStatus.active
        db.commit()
        db.refresh(item)
        logger.info("Updated %s: %s", Subscription.__name__, item.id)
        return item

    @staticmethod
    def cancel(
        db: Session, item_id: str, gateway: PaymentGateway | None = None
    ) -> Subscription:
        item = Subscriptions.get(db, item_id)
        if item.status == SubscriptionStatus.canceled:
            return item
        if item.external_id:
            gateway = gateway or get_gateway(item.customer.provider)
            gateway.cancel_subscription(item.external_id)
        item.status = SubscriptionStatus.canceled
        item.canceled_at = datetime.now(UTC)
        db.commit()
        db.refresh(item)
        logger.info("Canceled %s: %s", Subscription.__name__, item.id)
        return item

    @staticmethod
    def due_for_invoicing(db: Session, now: datetime | None = None) -> list[Subscription]:
        """Subscriptions whose current period has ended."""
        now = as_utc(now or datetime.now(UTC))
        return list(
            db.scalars(
                select(Subscription)
                .where(
                    Subscription.status.in_(
                        [SubscriptionStatus.active, SubscriptionStatus.past_due]
                    ),
                    Subscription.current_period_end <= now,
                )
                .order_by(Subscription.current_period_end)
            ).all()
        )

    @staticmethod
    def apply_provider_update(db: Session, event: CanonicalPaymentEvent) -> Subscription | None:
        """Mirror a provider-side subscription change onto the local row."""
        if event.subscription is None:
            return None
        item = db.scalars(
            select(Subscription).where(
                Subscription.external_id == event.subscription.provider_subscription_id
            )
        ).first()
        if item is None:
            logger.info(
                "No local subscription for %s",
                event.subscription.provider_subscription_id,
                extra={"provider": event.provider, "event_id": event.provider_event_id},
            )
            return None
        if event.type == "subscription.canceled":
            target = SubscriptionStatus.canceled
        else:
            target = _PROVIDER_STATUS.get(event.subscription.status or "")
        if target is None or target == item.status:
            return item
        if item.status == SubscriptionStatus.canceled:
            return item
        item.status = target
        if target == SubscriptionStatus.canceled:
            item.canceled_at = event.occurred_at
        db.flush()
        logger.info("Subscription %s is now %s", item.id, target.value)
        return item

    @staticmethod
    def list(
        db: Session,
        customer_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[Subscription], int]:
        query = db.query(Subscription)
        if customer_id:
            query = query.filter(Subscription.customer_id == coerce_uuid(customer_id))
        if status:
            query = query.filter(
                Subscription.status == validate_enum(status, SubscriptionStatus, "status")
            )
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Subscription.created_at,
                "current_period_end": Subscription.current_period_end,
            },
        )
        return list(apply_pagination(query, limit, offset).all()), total


subscriptions = Subscriptions()
