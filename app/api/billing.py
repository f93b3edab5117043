from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import get_db, idempotency_key
from app.schemas.billing import (
    BalanceRead,
    BillingAlertRead,
    CustomerCreate,
    CustomerRead,
    InvoiceFinalizeRequest,
    InvoicePreview,
    InvoiceRead,
    LedgerEntryRead,
    PlanCreate,
    PlanRead,
    PlanUpdate,
    ReconciliationReport,
    ReconciliationRequest,
    RefundCreate,
    RefundRead,
    SubscriptionCreate,
    SubscriptionRead,
    SubscriptionUpdate,
    UsageEventCreate,
    UsageEventRead,
    WebhookEventRead,
)
from app.schemas.common import ErrorResponse, ListResponse
from app.services import billing as billing_service
from app.services.billing.idempotency import run_idempotent

router = APIRouter(
    tags=["billing"],
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)

_ORDER_DIR = Query(default="desc", pattern="^(asc|desc)$")


def _idempotent(
    scope: str,
    key: str | None,
    status_code: int,
    schema: type[BaseModel],
    fn: Callable[[], Any],
) -> JSONResponse:
    def call() -> tuple[int, Any]:
        body = schema.model_validate(fn()).model_dump(mode="json", by_alias=True)
        return status_code, body

    code, body = run_idempotent(scope, key, call)
    return JSONResponse(status_code=code, content=body)


# ── Customers ────────────────────────────────────────────


@router.post(
    "/customers",
    response_model=CustomerRead,
    status_code=status.HTTP_201_CREATED,
    responses={502: {"model": ErrorResponse}},
)
def create_customer(
    payload: CustomerCreate,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        "customers.create",
        key,
        status.HTTP_201_CREATED,
        CustomerRead,
        lambda: billing_service.customers.create(db, payload),
    )


@router.get("/customers/{customer_id}", response_model=CustomerRead)
def get_customer(customer_id: str, db: Session = Depends(get_db)):
    return billing_service.customers.get(db, customer_id)


@router.get("/customers", response_model=ListResponse[CustomerRead])
def list_customers(
    tenant_id: str | None = None,
    provider: str | None = None,
    email: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = _ORDER_DIR,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.customers.list_response(
        db, tenant_id, provider, email, is_active, order_by, order_dir, limit, offset
    )


@router.get(
    "/customers/{customer_id}/ledger", response_model=ListResponse[LedgerEntryRead]
)
def list_customer_ledger(
    customer_id: str,
    ref_type: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="asc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.ledger.list_response(
        db, customer_id, ref_type, order_by, order_dir, limit, offset
    )


@router.get("/customers/{customer_id}/balance", response_model=BalanceRead)
def get_customer_balance(customer_id: str, db: Session = Depends(get_db)):
    customer = billing_service.customers.get(db, customer_id)
    balance = billing_service.ledger.get_balance(db, customer.id)
    expected = billing_service.ledger.expected_balance(db, customer.id)
    return BalanceRead(
        customer_id=customer.id,
        balance_cents=balance,
        expected_cents=expected,
        consistent=balance == expected,
    )


# ── Plans ────────────────────────────────────────────────


@router.post("/plans", response_model=PlanRead, status_code=status.HTTP_201_CREATED)
def create_plan(
    payload: PlanCreate,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        "plans.create",
        key,
        status.HTTP_201_CREATED,
        PlanRead,
        lambda: billing_service.plans.create(db, payload),
    )


@router.get("/plans/{plan_id}", response_model=PlanRead)
def get_plan(plan_id: str, db: Session = Depends(get_db)):
    return billing_service.plans.get(db, plan_id)


@router.get("/plans", response_model=ListResponse[PlanRead])
def list_plans(
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = _ORDER_DIR,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.plans.list_response(
        db, is_active, order_by, order_dir, limit, offset
    )


@router.patch("/plans/{plan_id}", response_model=PlanRead)
def update_plan(
    plan_id: str,
    payload: PlanUpdate,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        f"plans.update:{plan_id}",
        key,
        status.HTTP_200_OK,
        PlanRead,
        lambda: billing_service.plans.update(db, plan_id, payload),
    )


# ── Subscriptions ────────────────────────────────────────


@router.post(
    "/subscriptions",
    response_model=SubscriptionRead,
    status_code=status.HTTP_201_CREATED,
    responses={502: {"model": ErrorResponse}},
)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        "subscriptions.create",
        key,
        status.HTTP_201_CREATED,
        SubscriptionRead,
        lambda: billing_service.subscriptions.create(db, payload),
    )


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(subscription_id: str, db: Session = Depends(get_db)):
    return billing_service.subscriptions.get(db, subscription_id)


@router.get("/subscriptions", response_model=ListResponse[SubscriptionRead])
def list_subscriptions(
    customer_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = _ORDER_DIR,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.subscriptions.list_response(
        db, customer_id, status, order_by, order_dir, limit, offset
    )


@router.patch(
    "/subscriptions/{subscription_id}",
    response_model=SubscriptionRead,
    responses={502: {"model": ErrorResponse}},
)
def update_subscription(
    subscription_id: str,
    payload: SubscriptionUpdate,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        f"subscriptions.update:{subscription_id}",
        key,
        status.HTTP_200_OK,
        SubscriptionRead,
        lambda: billing_service.subscriptions.update(db, subscription_id, payload),
    )


@router.post(
    "/subscriptions/{subscription_id}/cancel",
    response_model=SubscriptionRead,
    responses={502: {"model": ErrorResponse}},
)
def cancel_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        f"subscriptions.cancel:{subscription_id}",
        key,
        status.HTTP_200_OK,
        SubscriptionRead,
        lambda: billing_service.subscriptions.cancel(db, subscription_id),
    )


# ── Usage ────────────────────────────────────────────────


@router.post(
    "/usage-events", response_model=UsageEventRead, status_code=status.HTTP_201_CREATED
)
def record_usage_event(
    payload: UsageEventCreate,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        "usage_events.record",
        key,
        status.HTTP_201_CREATED,
        UsageEventRead,
        lambda: billing_service.usage_events.record(db, payload),
    )


@router.get("/usage-events", response_model=ListResponse[UsageEventRead])
def list_usage_events(
    subscription_id: str | None = None,
    metric_key: str | None = None,
    processed: bool | None = None,
    order_by: str = Query(default="event_time"),
    order_dir: str = _ORDER_DIR,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.usage_events.list_response(
        db, subscription_id, metric_key, processed, order_by, order_dir, limit, offset
    )


# ── Invoices ─────────────────────────────────────────────


@router.post(
    "/invoices/finalize",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    responses={500: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
def finalize_invoice(
    payload: InvoiceFinalizeRequest,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        "invoices.finalize",
        key,
        status.HTTP_201_CREATED,
        InvoiceRead,
        lambda: billing_service.invoices.finalize(
            db, str(payload.subscription_id), payload.period_start, payload.period_end
        ),
    )


@router.post("/invoices/preview", response_model=InvoicePreview)
def preview_invoice(payload: InvoiceFinalizeRequest, db: Session = Depends(get_db)):
    return billing_service.invoices.preview(
        db, str(payload.subscription_id), payload.period_start, payload.period_end
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceRead)
def get_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.get(db, invoice_id)


@router.get("/invoices", response_model=ListResponse[InvoiceRead])
def list_invoices(
    customer_id: str | None = None,
    subscription_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = _ORDER_DIR,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.invoices.list_response(
        db, customer_id, subscription_id, status, order_by, order_dir, limit, offset
    )


@router.post(
    "/invoices/{invoice_id}/retry-finalize",
    response_model=InvoiceRead,
    responses={502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def retry_finalize_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        f"invoices.retry_finalize:{invoice_id}",
        key,
        status.HTTP_200_OK,
        InvoiceRead,
        lambda: billing_service.invoices.retry_finalize(db, invoice_id),
    )


@router.post(
    "/invoices/{invoice_id}/void",
    response_model=InvoiceRead,
    responses={502: {"model": ErrorResponse}},
)
def void_invoice(
    invoice_id: str,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        f"invoices.void:{invoice_id}",
        key,
        status.HTTP_200_OK,
        InvoiceRead,
        lambda: billing_service.invoices.void(db, invoice_id),
    )


@router.post(
    "/invoices/{invoice_id}/refunds",
    response_model=RefundRead,
    status_code=status.HTTP_201_CREATED,
    responses={502: {"model": ErrorResponse}},
)
def refund_invoice(
    invoice_id: str,
    payload: RefundCreate,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        f"invoices.refund:{invoice_id}",
        key,
        status.HTTP_201_CREATED,
        RefundRead,
        lambda: billing_service.refunds.refund(
            db, invoice_id, payload.amount_cents, payload.reason
        ),
    )


@router.get("/invoices/{invoice_id}/refunds", response_model=ListResponse[RefundRead])
def list_invoice_refunds(
    invoice_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.refunds.list_response(db, invoice_id, limit, offset)


# ── Reconciliation & operations ──────────────────────────


@router.post(
    "/reconciliation/runs",
    response_model=ReconciliationReport,
    responses={502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def run_reconciliation(
    payload: ReconciliationRequest,
    db: Session = Depends(get_db),
    key: str | None = Depends(idempotency_key),
):
    return _idempotent(
        "reconciliation.run",
        key,
        status.HTTP_200_OK,
        ReconciliationReport,
        lambda: billing_service.payment_matcher.reconcile(
            db, payload.provider, payload.window_start, payload.window_end
        ),
    )


@router.get("/alerts", response_model=ListResponse[BillingAlertRead])
def list_alerts(
    kind: str | None = None,
    resolved: bool | None = None,
    customer_id: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = _ORDER_DIR,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.alerts.list_response(
        db, kind, resolved, customer_id, order_by, order_dir, limit, offset
    )


@router.post("/alerts/{alert_id}/resolve", response_model=BillingAlertRead)
def resolve_alert(alert_id: str, db: Session = Depends(get_db)):
    return billing_service.alerts.resolve(db, alert_id)


@router.get("/webhook-events", response_model=ListResponse[WebhookEventRead])
def list_webhook_events(
    provider: str | None = None,
    status: str | None = None,
    event_type: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = _ORDER_DIR,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return billing_service.webhook_events.list_response(
        db, provider, status, event_type, order_by, order_dir, limit, offset
    )
