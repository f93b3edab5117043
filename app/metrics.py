from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

LEDGER_ENTRIES = Counter(
    "billing_ledger_entries_total",
    "Ledger entries written",
    ["side", "ref_type"],
)
INVOICES_FINALIZED = Counter(
    "billing_invoices_finalized_total",
    "Invoices finalized locally",
    ["outcome"],
)
WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Inbound webhook deliveries",
    ["provider", "outcome"],
)
GATEWAY_CALLS = Counter(
    "billing_gateway_calls_total",
    "Outbound payment gateway calls",
    ["provider", "operation", "outcome"],
)
GATEWAY_LATENCY = Histogram(
    "billing_gateway_call_duration_seconds",
    "Outbound payment gateway call latency",
    ["provider", "operation"],
)
BILLING_ALERTS = Counter(
    "billing_alerts_total",
    "Reconciliation and integrity alerts raised",
    ["kind"],
)
