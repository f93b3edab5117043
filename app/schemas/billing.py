from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ── Pricing rules ────────────────────────────────────────


class CostPlusRule(BaseModel):
    model_config = ConfigDict(frozen=True)
    mode: Literal["cost_plus"] = "cost_plus"
    markup_percent: Decimal = Field(default=Decimal("0"), ge=0)
    markup_fixed_cents: Decimal = Field(default=Decimal("0"), ge=0)


class FixedRateRule(BaseModel):
    model_config = ConfigDict(frozen=True)
    mode: Literal["fixed_rate"] = "fixed_rate"
    rate_cents: Decimal = Field(ge=0)


class Tier(BaseModel):
    model_config = ConfigDict(frozen=True)
    up_to: int | None = Field(default=None, gt=0)
    unit_cents: Decimal = Field(ge=0)


class TieredRule(BaseModel):
    model_config = ConfigDict(frozen=True)
    mode: Literal["tiered"] = "tiered"
    tiers: list[Tier] = Field(min_length=1)

    @field_validator("tiers")
    @classmethod
    def _tiers_ascending(cls, tiers: list[Tier]) -> list[Tier]:
        bounds = [tier.up_to for tier in tiers]
        if any(bound is None for bound in bounds[:-1]):
            raise ValueError("only the last tier may be unbounded")
        finite = [bound for bound in bounds if bound is not None]
        if finite != sorted(set(finite)) or len(finite) != len(set(finite)):
            raise ValueError("tier bounds must be strictly ascending")
        return tiers


PricingRule = Annotated[
    CostPlusRule | FixedRateRule | TieredRule, Field(discriminator="mode")
]


class PlanPricing(BaseModel):
    """Everything valuation needs to know about a plan."""

    model_config = ConfigDict(frozen=True)
    base_price_cents: int = Field(ge=0)
    included_allowances: dict[str, int] = Field(default_factory=dict)
    overage_rules: dict[str, PricingRule] = Field(default_factory=dict)
    min_usage_cents: int | None = Field(default=None, ge=0)
    max_usage_cents: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _caps_ordered(self) -> "PlanPricing":
        if (
            self.min_usage_cents is not None
            and self.max_usage_cents is not None
            and self.min_usage_cents > self.max_usage_cents
        ):
            raise ValueError("min_usage_cents cannot exceed max_usage_cents")
        if any(value < 0 for value in self.included_allowances.values()):
            raise ValueError("included allowances must be non-negative")
        return self


# ── Valuation input/output ───────────────────────────────


class UsageAggregate(BaseModel):
    model_config = ConfigDict(frozen=True)
    metric_key: str
    total_quantity: int = Field(ge=0)
    vendor_cost_cents: Decimal = Field(default=Decimal("0"), ge=0)
    event_count: int = Field(default=0, ge=0)
    event_ids: tuple[UUID, ...] = Field(default=(), exclude=True)


class ValuationContext(BaseModel):
    model_config = ConfigDict(frozen=True)
    subscription_id: UUID
    plan_name: str
    period_start: datetime
    period_end: datetime


class LineItem(BaseModel):
    model_config = ConfigDict(frozen=True)
    type: Literal["subscription", "usage", "credit", "refund", "adjustment"]
    metric_key: str | None = None
    description: str
    quantity: int
    unit_amount_cents: int
    amount_cents: int
    capped: bool = False
    metadata: dict[str, str | int | bool] = Field(default_factory=dict)


# ── Customer ─────────────────────────────────────────────


class CustomerCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    tenant_id: str = Field(min_length=1, max_length=120)
    client_id: str = Field(min_length=1, max_length=120)
    provider: Literal["stripe", "paystack"]
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    metadata_: dict | None = Field(default=None, alias="metadata")


class CustomerRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)
    id: UUID
    tenant_id: str
    client_id: str
    provider: str
    external_id: str | None = None
    name: str
    email: str
    currency: str
    is_active: bool
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime
    updated_at: datetime


# ── Plan ─────────────────────────────────────────────────


class PlanCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    base_price_cents: int = Field(ge=0)
    billing_cycle: Literal["day", "week", "month", "year"] = "month"
    included_allowances: dict[str, int] = Field(default_factory=dict)
    overage_rules: dict[str, PricingRule] = Field(default_factory=dict)
    min_usage_cents: int | None = Field(default=None, ge=0)
    max_usage_cents: int | None = Field(default=None, ge=0)
    external_price_id: str | None = Field(default=None, max_length=255)


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    base_price_cents: int | None = Field(default=None, ge=0)
    included_allowances: dict[str, int] | None = None
    overage_rules: dict[str, PricingRule] | None = None
    min_usage_cents: int | None = Field(default=None, ge=0)
    max_usage_cents: int | None = Field(default=None, ge=0)
    external_price_id: str | None = Field(default=None, max_length=255)
    is_active: bool | None = None


class PlanRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    name: str
    currency: str
    base_price_cents: int
    billing_cycle: str
    included_allowances: dict | None = None
    overage_rules: dict | None = None
    min_usage_cents: int | None = None
    max_usage_cents: int | None = None
    external_price_id: str | None = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


# ── Subscription ─────────────────────────────────────────


class SubscriptionCreate(BaseModel):
    customer_id: UUID
    plan_id: UUID
    period_start: datetime | None = None


class SubscriptionUpdate(BaseModel):
    plan_id: UUID | None = None
    status: Literal["active", "paused"] | None = None


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    customer_id: UUID
    plan_id: UUID
    status: str
    billing_cycle: str
    current_period_start: datetime
    current_period_end: datetime
    canceled_at: datetime | None = None
    external_id: str | None = None
    created_at: datetime
    updated_at: datetime


# ── Usage ────────────────────────────────────────────────


class UsageEventCreate(BaseModel):
    subscription_id: UUID
    metric_key: str = Field(min_length=1, max_length=120)
    quantity: int = Field(gt=0)
    vendor_cost_cents: Decimal = Field(default=Decimal("0"), ge=0)
    event_time: datetime
    idempotency_key: str = Field(min_length=1, max_length=255)


class UsageEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    subscription_id: UUID
    metric_key: str
    quantity: int
    vendor_cost_cents: Decimal
    event_time: datetime
    processed: bool
    invoice_id: UUID | None = None
    idempotency_key: str
    created_at: datetime


# ── Invoice ──────────────────────────────────────────────


class InvoiceFinalizeRequest(BaseModel):
    subscription_id: UUID
    period_start: datetime
    period_end: datetime

    @model_validator(mode="after")
    def _period_ordered(self) -> "InvoiceFinalizeRequest":
        if self.period_end <= self.period_start:
            raise ValueError("period_end must be after period_start")
        return self


class InvoiceLineItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    position: int
    type: str
    metric_key: str | None = None
    description: str | None = None
    quantity: int
    unit_amount_cents: int
    amount_cents: int
    capped: bool
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    customer_id: UUID
    subscription_id: UUID
    number: str | None = None
    status: str
    currency: str
    period_start: datetime
    period_end: datetime
    total_cents: int
    amount_paid_cents: int
    amount_refunded_cents: int
    external_id: str | None = None
    finalized_at: datetime | None = None
    paid_at: datetime | None = None
    voided_at: datetime | None = None
    line_items: list[InvoiceLineItemRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class InvoicePreview(BaseModel):
    subscription_id: UUID
    period_start: datetime
    period_end: datetime
    total_cents: int
    line_items: list[LineItem]


class RefundCreate(BaseModel):
    amount_cents: int | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=500)


class RefundRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: UUID
    invoice_id: UUID
    payment_id: UUID
    provider_refund_id: str
    amount_cents: int
    reason: str | None = None
    created_at: datetime


# ── Ledger ───────────────────────────────────────────────


class LedgerEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    customer_id: UUID
    invoice_id: UUID | None = None
    debit_cents: int
    credit_cents: int
    ref_type: str
    ref_id: str
    description: str | None = None
    created_at: datetime


class BalanceRead(BaseModel):
    customer_id: UUID
    balance_cents: int
    expected_cents: int
    consistent: bool


# ── Alerts & webhooks ────────────────────────────────────


class BillingAlertRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    kind: str
    severity: str
    customer_id: UUID | None = None
    invoice_id: UUID | None = None
    message: str
    details: dict | None = None
    resolved: bool
    resolved_at: datetime | None = None
    created_at: datetime


class WebhookEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    provider: str
    event_id: str
    event_type: str
    canonical_type: str
    correlation_id: str | None = None
    status: str
    attempts: int
    error_message: str | None = None
    processed_at: datetime | None = None
    created_at: datetime


class WebhookAck(BaseModel):
    status: Literal["accepted", "duplicate", "ignored"]
    event_id: str
    correlation_id: str | None = None


# ── Canonical payment events ─────────────────────────────

CanonicalEventType = Literal[
    "customer.updated",
    "subscription.updated",
    "subscription.canceled",
    "payment.succeeded",
    "payment.failed",
    "refund.succeeded",
    "dispute.created",
    "dispute.won",
    "dispute.lost",
    "unknown",
]


class CustomerRef(BaseModel):
    provider_customer_id: str | None = None
    email: str | None = None


class SubscriptionRef(BaseModel):
    provider_subscription_id: str
    status: str | None = None


class InvoiceRef(BaseModel):
    provider_invoice_id: str
    amount_due_cents: int | None = None


class PaymentRef(BaseModel):
    provider_payment_id: str
    provider_invoice_id: str | None = None
    amount_cents: int
    currency: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None


class RefundRef(BaseModel):
    provider_refund_id: str
    provider_payment_id: str
    amount_cents: int
    reason: str | None = None


class DisputeRef(BaseModel):
    provider_dispute_id: str
    provider_payment_id: str
    amount_cents: int
    status: str | None = None


class CanonicalPaymentEvent(BaseModel):
    type: CanonicalEventType
    provider: str
    provider_event_id: str
    provider_event_type: str
    occurred_at: datetime
    correlation_id: str
    customer: CustomerRef | None = None
    subscription: SubscriptionRef | None = None
    invoice: InvoiceRef | None = None
    payment: PaymentRef | None = None
    refund: RefundRef | None = None
    dispute: DisputeRef | None = None

    def routing_key(self) -> str:
        """Key that orders processing for one customer's money movements."""
        if self.customer and self.customer.provider_customer_id:
            return f"customer:{self.customer.provider_customer_id}"
        if self.payment and self.payment.provider_invoice_id:
            return f"invoice:{self.payment.provider_invoice_id}"
        if self.invoice:
            return f"invoice:{self.invoice.provider_invoice_id}"
        if self.payment:
            return f"payment:{self.payment.provider_payment_id}"
        if self.refund:
            return f"payment:{self.refund.provider_payment_id}"
        if self.dispute:
            return f"payment:{self.dispute.provider_payment_id}"
        if self.subscription:
            return f"subscription:{self.subscription.provider_subscription_id}"
        return f"event:{self.provider_event_id}"


# ── Reconciliation ───────────────────────────────────────


class ReconciliationRequest(BaseModel):
    provider: Literal["stripe", "paystack"]
    window_start: datetime
    window_end: datetime

    @model_validator(mode="after")
    def _window_ordered(self) -> "ReconciliationRequest":
        if self.window_end <= self.window_start:
            raise ValueError("window_end must be after window_start")
        return self


class ReconciliationFinding(BaseModel):
    kind: Literal[
        "paid_at_provider_open_locally",
        "paid_locally_missing_at_provider",
        "amount_mismatch",
        "unknown_provider_payment",
        "ledger_inconsistent",
    ]
    invoice_id: UUID | None = None
    customer_id: UUID | None = None
    provider_invoice_id: str | None = None
    provider_payment_id: str | None = None
    local_amount_cents: int | None = None
    provider_amount_cents: int | None = None


class ReconciliationReport(BaseModel):
    provider: str
    window_start: datetime
    window_end: datetime
    invoices_checked: int
    provider_payments: int
    matched: int
    findings: list[ReconciliationFinding] = Field(default_factory=list)
