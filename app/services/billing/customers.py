import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.errors import ConflictError, NotFoundError
from app.models.billing import Customer
from app.schemas.billing import CustomerCreate
from app.services.common import apply_ordering, apply_pagination, coerce_uuid
from app.services.payment_gateway import PaymentGateway, get_gateway
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


class Customers(ListResponseMixin):
    @staticmethod
    def create(
        db: Session, payload: CustomerCreate, gateway: PaymentGateway | None = None
    ) -> Customer:
        """Create the customer at the provider first, then locally."""
        existing = db.scalars(
            select(Customer).where(
                Customer.tenant_id == payload.tenant_id,
                Customer.client_id == payload.client_id,
                Customer.provider == payload.provider,
            )
        ).first()
        if existing:
            raise ConflictError(
                "Customer already exists for this tenant, client and provider",
                details={"customer_id": str(existing.id)},
            )
        gateway = gateway or get_gateway(payload.provider)
        external_id = gateway.create_customer(
            payload.email,
            payload.name,
            {"tenant_id": payload.tenant_id, "client_id": payload.client_id},
        )
        item = Customer(**payload.model_dump(), external_id=external_id)
        db.add(item)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError(
                "Customer already exists for this tenant, client and provider"
            ) from exc
        db.refresh(item)
        logger.info(
            "Created Customer: %s",
            item.id,
            extra={"customer_id": str(item.id), "provider": item.provider},
        )
        return item

    @staticmethod
    def get(db: Session, item_id: str) -> Customer:
        item = db.get(Customer, coerce_uuid(item_id))
        if not item:
            raise NotFoundError("Customer not found")
        return item

    @staticmethod
    def get_by_external_id(db: Session, provider: str, external_id: str) -> Customer | None:
        return db.scalars(
            select(Customer).where(
                Customer.provider == provider, Customer.external_id == external_id
            )
        ).first()

    @staticmethod
    def list(
        db: Session,
        tenant_id: str | None,
        provider: str | None,
        email: str | None,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> tuple[list[Customer], int]:
        query = db.query(Customer)
        if tenant_id:
            query = query.filter(Customer.tenant_id == tenant_id)
        if provider:
            query = query.filter(Customer.provider == provider)
        if email:
            query = query.filter(Customer.email.ilike(f"%{email}%"))
        if is_active is not None:
            query = query.filter(Customer.is_active == is_active)
        total = query.count()
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": Customer.created_at, "name": Customer.name},
        )
        return list(apply_pagination(query, limit, offset).all()), total


customers = Customers()
