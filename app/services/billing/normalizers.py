"""Provider webhook payloads -> ``CanonicalPaymentEvent``.

Each provider has a table from its event type to a builder. Types that carry
no billing meaning are listed as informational and are stored as ignored
without raising an alert; anything else unknown normalizes to ``unknown``.
"""
from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from app.errors import ValidationFailedError
from app.schemas.billing import (
    CanonicalPaymentEvent,
    CustomerRef,
    DisputeRef,
    InvoiceRef,
    PaymentRef,
    RefundRef,
    SubscriptionRef,
)

Builder = Callable[[dict[str, Any]], dict[str, Any]]


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, UTC)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _payload_digest(payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:32]


# ── Stripe ───────────────────────────────────────────────


def _stripe_payment_id(obj: dict[str, Any]) -> str | None:
    value = obj.get("payment_intent") or obj.get("charge")
    if isinstance(value, dict):
        value = value.get("id")
    return value


def _stripe_charge_customer(obj: dict[str, Any]) -> CustomerRef | None:
    customer = obj.get("customer")
    charge = obj.get("charge")
    if not customer and isinstance(charge, dict):
        customer = charge.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return CustomerRef(provider_customer_id=customer) if customer else None


def _stripe_customer(obj: dict[str, Any]) -> dict[str, Any]:
    return {"customer": CustomerRef(provider_customer_id=obj["id"], email=obj.get("email"))}


def _stripe_subscription(obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "subscription": SubscriptionRef(
            provider_subscription_id=obj["id"], status=obj.get("status")
        ),
        "customer": CustomerRef(provider_customer_id=obj.get("customer")),
    }


def _stripe_invoice_paid(obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "invoice": InvoiceRef(
            provider_invoice_id=obj["id"], amount_due_cents=obj.get("amount_due")
        ),
        "payment": PaymentRef(
            provider_payment_id=_stripe_payment_id(obj) or obj["id"],
            provider_invoice_id=obj["id"],
            amount_cents=int(obj.get("amount_paid", 0)),
            currency=obj.get("currency"),
        ),
        "customer": CustomerRef(provider_customer_id=obj.get("customer")),
    }


def _stripe_invoice_failed(obj: dict[str, Any]) -> dict[str, Any]:
    error = obj.get("last_finalization_error") or {}
    payment_id = _stripe_payment_id(obj) or f"{obj['id']}:attempt:{obj.get('attempt_count', 0)}"
    return {
        "invoice": InvoiceRef(
            provider_invoice_id=obj["id"], amount_due_cents=obj.get("amount_due")
        ),
        "payment": PaymentRef(
            provider_payment_id=payment_id,
            provider_invoice_id=obj["id"],
            amount_cents=int(obj.get("amount_due", 0)),
            currency=obj.get("currency"),
            failure_code=error.get("code"),
            failure_message=error.get("message"),
        ),
        "customer": CustomerRef(provider_customer_id=obj.get("customer")),
    }


def _stripe_charge_refunded(obj: dict[str, Any]) -> dict[str, Any]:
    refunds = (obj.get("refunds") or {}).get("data") or []
    if refunds:
        latest = refunds[0]
        refund_id, amount = latest["id"], int(latest["amount"])
        reason = latest.get("reason")
    else:
        amount = int(obj.get("amount_refunded", 0))
        refund_id, reason = f"{obj['id']}:refunded:{amount}", None
    return {
        "refund": RefundRef(
            provider_refund_id=refund_id,
            provider_payment_id=obj.get("payment_intent") or obj["id"],
            amount_cents=amount,
            reason=reason,
        ),
        "customer": _stripe_charge_customer(obj),
    }


def _stripe_dispute(obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "dispute": DisputeRef(
            provider_dispute_id=obj["id"],
            provider_payment_id=_stripe_payment_id(obj) or "",
            amount_cents=int(obj["amount"]),
            status=obj.get("status"),
        ),
        "customer": _stripe_charge_customer(obj),
    }


def _stripe_dispute_closed_type(obj: dict[str, Any]) -> str:
    return {"won": "dispute.won", "lost": "dispute.lost"}.get(obj.get("status", ""), "unknown")


_STRIPE_TYPES: dict[str, tuple[str | Callable[[dict[str, Any]], str], Builder]] = {
    "customer.updated": ("customer.updated", _stripe_customer),
    "customer.subscription.updated": ("subscription.updated", _stripe_subscription),
    "customer.subscription.deleted": ("subscription.canceled", _stripe_subscription),
    "invoice.paid": ("payment.succeeded", _stripe_invoice_paid),
    "invoice.payment_succeeded": ("payment.succeeded", _stripe_invoice_paid),
    "invoice.payment_failed": ("payment.failed", _stripe_invoice_failed),
    "charge.refunded": ("refund.succeeded", _stripe_charge_refunded),
    "charge.dispute.created": ("dispute.created", _stripe_dispute),
    "charge.dispute.closed": (_stripe_dispute_closed_type, _stripe_dispute),
}

_STRIPE_INFORMATIONAL = {
    "customer.created",
    "customer.subscription.created",
    "invoice.created",
    "invoice.finalized",
    "invoice.updated",
    "invoice.voided",
    "invoiceitem.created",
    "payment_intent.created",
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "charge.succeeded",
    "charge.failed",
    "charge.dispute.updated",
    "charge.dispute.funds_withdrawn",
    "charge.dispute.funds_reinstated",
}


def normalize_stripe(payload: dict[str, Any], received_at: datetime) -> CanonicalPaymentEvent:
    try:
        event_id = payload["id"]
        event_type = payload["type"]
        obj = payload["data"]["object"]
    except (KeyError, TypeError) as exc:
        raise ValidationFailedError("Malformed Stripe event") from exc
    request = payload.get("request") or {}
    correlation_id = (request.get("id") if isinstance(request, dict) else None) or f"stripe:{event_id}"
    base = {
        "provider": "stripe",
        "provider_event_id": event_id,
        "provider_event_type": event_type,
        "occurred_at": _parse_time(payload.get("created")) or received_at,
        "correlation_id": correlation_id,
    }
    return _build(base, event_type, obj, _STRIPE_TYPES)


# ── Paystack ─────────────────────────────────────────────


def _paystack_customer(data: dict[str, Any]) -> CustomerRef | None:
    customer = data.get("customer")
    if isinstance(customer, dict):
        return CustomerRef(
            provider_customer_id=customer.get("customer_code"), email=customer.get("email")
        )
    return None


def _paystack_payment_request(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "invoice": InvoiceRef(
            provider_invoice_id=data["request_code"], amount_due_cents=data.get("amount")
        ),
        "payment": PaymentRef(
            provider_payment_id=data.get("offline_reference") or data["request_code"],
            provider_invoice_id=data["request_code"],
            amount_cents=int(data["amount"]),
            currency=str(data.get("currency", "")).lower() or None,
        ),
        "customer": _paystack_customer(data),
    }


def _paystack_invoice_failed(data: dict[str, Any]) -> dict[str, Any]:
    invoice_code = data.get("invoice_code") or data["request_code"]
    transaction = data.get("transaction") or {}
    return {
        "invoice": InvoiceRef(provider_invoice_id=invoice_code, amount_due_cents=data.get("amount")),
        "payment": PaymentRef(
            provider_payment_id=transaction.get("reference") or f"{invoice_code}:failed",
            provider_invoice_id=invoice_code,
            amount_cents=int(data.get("amount", 0)),
            currency=str(data.get("currency", "")).lower() or None,
            failure_code=transaction.get("status"),
            failure_message=transaction.get("gateway_response"),
        ),
        "customer": _paystack_customer(data),
    }


def _paystack_subscription(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "subscription": SubscriptionRef(
            provider_subscription_id=data["subscription_code"], status=data.get("status")
        ),
        "customer": _paystack_customer(data),
    }


def _paystack_refund(data: dict[str, Any]) -> dict[str, Any]:
    return {
        "refund": RefundRef(
            provider_refund_id=str(data.get("id") or data["refund_reference"]),
            provider_payment_id=data["transaction_reference"],
            amount_cents=int(data["amount"]),
            reason=data.get("merchant_note"),
        ),
        "customer": _paystack_customer(data),
    }


def _paystack_dispute(data: dict[str, Any]) -> dict[str, Any]:
    transaction = data.get("transaction") or {}
    return {
        "dispute": DisputeRef(
            provider_dispute_id=str(data["id"]),
            provider_payment_id=transaction.get("reference", ""),
            amount_cents=int(data.get("refund_amount") or transaction.get("amount", 0)),
            status=data.get("status"),
        ),
        "customer": _paystack_customer(data),
    }


def _paystack_dispute_resolved_type(data: dict[str, Any]) -> str:
    resolution = data.get("resolution")
    if resolution == "declined":
        return "dispute.won"
    if resolution == "merchant-accepted":
        return "dispute.lost"
    return "unknown"


_PAYSTACK_TYPES: dict[str, tuple[str | Callable[[dict[str, Any]], str], Builder]] = {
    "paymentrequest.success": ("payment.succeeded", _paystack_payment_request),
    "invoice.payment_failed": ("payment.failed", _paystack_invoice_failed),
    "subscription.create": ("subscription.updated", _paystack_subscription),
    "subscription.not_renew": ("subscription.updated", _paystack_subscription),
    "subscription.disable": ("subscription.canceled", _paystack_subscription),
    "refund.processed": ("refund.succeeded", _paystack_refund),
    "charge.dispute.create": ("dispute.created", _paystack_dispute),
    "charge.dispute.resolve": (_paystack_dispute_resolved_type, _paystack_dispute),
}

_PAYSTACK_INFORMATIONAL = {
    "charge.success",
    "paymentrequest.pending",
    "invoice.create",
    "invoice.update",
    "refund.pending",
    "refund.processing",
    "charge.dispute.remind",
    "customeridentification.success",
    "customeridentification.failed",
    "transfer.success",
    "transfer.failed",
}


def normalize_paystack(payload: dict[str, Any], received_at: datetime) -> CanonicalPaymentEvent:
    """Paystack sends no event id; the event name plus the object id stands in."""
    try:
        event_type = payload["event"]
        data = payload["data"]
    except (KeyError, TypeError) as exc:
        raise ValidationFailedError("Malformed Paystack event") from exc
    if not isinstance(data, dict):
        raise ValidationFailedError("Malformed Paystack event")
    object_id = (
        data.get("id")
        or data.get("reference")
        or data.get("request_code")
        or data.get("subscription_code")
    )
    event_id = f"{event_type}:{object_id}" if object_id else f"{event_type}:{_payload_digest(payload)}"
    occurred_at = (
        _parse_time(data.get("paid_at"))
        or _parse_time(data.get("updated_at") or data.get("updatedAt"))
        or _parse_time(data.get("created_at") or data.get("createdAt"))
        or received_at
    )
    base = {
        "provider": "paystack",
        "provider_event_id": event_id,
        "provider_event_type": event_type,
        "occurred_at": occurred_at,
        "correlation_id": f"paystack:{event_id}",
    }
    return _build(base, event_type, data, _PAYSTACK_TYPES)


# ── Shared ───────────────────────────────────────────────


def _build(
    base: dict[str, Any],
    event_type: str,
    obj: dict[str, Any],
    table: dict[str, tuple[str | Callable[[dict[str, Any]], str], Builder]],
) -> CanonicalPaymentEvent:
    entry = table.get(event_type)
    if entry is None:
        return CanonicalPaymentEvent(type="unknown", **base)
    canonical_type, builder = entry
    if callable(canonical_type):
        canonical_type = canonical_type(obj)
    if canonical_type == "unknown":
        return CanonicalPaymentEvent(type="unknown", **base)
    try:
        parts = builder(obj)
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationFailedError(
            f"Malformed {base['provider']} {event_type} payload",
            details={"event_id": base["provider_event_id"]},
        ) from exc
    return CanonicalPaymentEvent(type=canonical_type, **base, **parts)


_NORMALIZERS: dict[str, Callable[[dict[str, Any], datetime], CanonicalPaymentEvent]] = {
    "stripe": normalize_stripe,
    "paystack": normalize_paystack,
}

_INFORMATIONAL = {"stripe": _STRIPE_INFORMATIONAL, "paystack": _PAYSTACK_INFORMATIONAL}


def normalize(
    provider: str, payload: dict[str, Any], received_at: datetime | None = None
) -> CanonicalPaymentEvent:
    normalizer = _NORMALIZERS.get(provider)
    if normalizer is None:
        raise ValidationFailedError(f"Unsupported payment provider: {provider}")
    return normalizer(payload, received_at or datetime.now(UTC))


def is_informational(provider: str, event_type: str) -> bool:
    return event_type in _INFORMATIONAL.get(provider, set())
