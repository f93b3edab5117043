from app.models.billing import (  # noqa: F401
    AlertKind,
    AlertSeverity,
    BillingAlert,
    BillingCycle,
    Customer,
    Dispute,
    DisputeStatus,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    LedgerEntry,
    LedgerRefType,
    LineItemType,
    Payment,
    PaymentStatus,
    Plan,
    Refund,
    Subscription,
    SubscriptionStatus,
    UsageEvent,
    WebhookEvent,
    WebhookEventStatus,
)
