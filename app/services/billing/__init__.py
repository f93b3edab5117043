from app.services.billing.alerts import Alerts, alerts
from app.services.billing.customers import Customers, customers
from app.services.billing.disputes import Disputes, Refunds, disputes, refunds
from app.services.billing.invoices import Invoices, invoices
from app.services.billing.ledger import Ledger, ledger
from app.services.billing.payments import PaymentMatcher, payment_matcher
from app.services.billing.plans import Plans, plans
from app.services.billing.subscriptions import Subscriptions, subscriptions
from app.services.billing.usage import UsageEvents, aggregate_usage, usage_events
from app.services.billing.valuation import valuate
from app.services.billing.webhooks import (
    WebhookEvents,
    WebhookIngress,
    process_webhook_event,
    redrive_pending,
    webhook_events,
    webhook_ingress,
)

__all__ = [
    "Alerts",
    "Customers",
    "Disputes",
    "Invoices",
    "Ledger",
    "PaymentMatcher",
    "Plans",
    "Refunds",
    "Subscriptions",
    "UsageEvents",
    "WebhookEvents",
    "WebhookIngress",
    "aggregate_usage",
    "alerts",
    "customers",
    "disputes",
    "invoices",
    "ledger",
    "payment_matcher",
    "plans",
    "process_webhook_event",
    "redrive_pending",
    "refunds",
    "subscriptions",
    "usage_events",
    "valuate",
    "webhook_events",
    "webhook_ingress",
]
