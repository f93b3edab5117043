import logging

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.errors import NotFoundError, ValidationFailedError
from app.models.billing import Plan
from app.schemas.billing import PlanCreate, PlanPricing, PlanUpdate
from app.services.common import apply_ordering, apply_pagination, coerce_uuid
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def plan_pricing(plan: Plan) -> PlanPricing:
    """Build the typed pricing view of a stored plan."""
    try:
        return PlanPricing.model_validate(
            {
                "base_price_cents": plan.base_price_cents,
                "included_allowances": plan.included_allowances or {},
                "overage_rules": plan.overage_rules or {},
                "min_usage_cents": plan.min_usage_cents,
                "max_usage_cents": plan.max_usage_cents,
            }
        )
    except ValidationError as exc:
        raise ValidationFailedError(
            "Invalid plan pricing",
            details=[
                {"loc": list(error["loc"]), "msg": error["msg"]}
                for error in exc.errors()
            ],
        ) from exc


class Plans(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: PlanCreate) -> Plan:
        item = Plan(**payload.model_dump(mode="json"))
        plan_pricing(item)
        db.add(item)
        db.commit()
        db.refresh(item)
        logger.info("Created Plan: %s", item.id)
        return item

    @staticmethod
    def get(db: Session, item_id: str) -> Plan:
        item = db.get(Plan, coerce_uuid(item_id))
        if not item:
            raise NotFoundError("Plan not found")
        return item

    @staticmethod
    def update(db: Session, item_id: str, payload: PlanUpdate) -> Plan:
        item = Plans.get(db, item_id)
        for key, value in payload.model_dump(mode="json", exclude_unset=True).items():
            setattr(item, key, value)
        try:
            plan_pricing(item)
        except ValidationFailedError:
            db.rollback()
            raise
        db.commit()
        db.refresh(item)
        logger.info("Updated %s: %s", Plan.__name__, item.id)
        return item

    @staticmethod
    def list(
        db: Session,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[Plan], int]:
        query = db.query(Plan)
        if is_active is not None:
            query = query.filter(Plan.is_active == is_active)
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Plan.created_at, "name": Plan.name},
        )
        return list(apply_pagination(query, limit, offset).all()), total


plans = Plans()
