"""Payment provider adapters (Stripe, Paystack) behind one narrow interface."""
from __future__ import annotations

import hashlib
import hmac
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock
from typing import Any, TypeVar

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from app.config import settings
from app.errors import GatewayError, ValidationFailedError, WebhookVerificationError
from app.metrics import GATEWAY_CALLS, GATEWAY_LATENCY
from app.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

STRIPE_BASE_URL = "https://api.stripe.com/v1"
PAYSTACK_BASE_URL = "https://api.paystack.co"


@dataclass(frozen=True)
class RemoteLine:
    description: str
    amount_cents: int


@dataclass(frozen=True)
class ProviderPayment:
    provider_payment_id: str
    provider_invoice_id: str | None
    amount_cents: int
    currency: str
    status: str
    created_at: datetime


class PaymentGateway(ABC):
    provider: str

    @abstractmethod
    def create_customer(
        self, email: str, name: str, metadata: dict[str, str]
    ) -> str: ...

    @abstractmethod
    def create_subscription(self, customer_external_id: str, price_id: str) -> str: ...

    @abstractmethod
    def update_subscription(
        self,
        external_id: str,
        *,
        price_id: str | None = None,
        paused: bool | None = None,
    ) -> None: ...

    @abstractmethod
    def cancel_subscription(self, external_id: str) -> None: ...

    @abstractmethod
    def create_invoice(
        self,
        customer_external_id: str,
        currency: str,
        lines: list[RemoteLine],
        *,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        """Create a draft invoice at the provider and return its id."""

    @abstractmethod
    def finalize_invoice(self, draft_id: str) -> str:
        """Finalize a draft and return the provider's invoice reference."""

    @abstractmethod
    def void_invoice(self, external_id: str) -> None: ...

    @abstractmethod
    def refund(
        self,
        provider_payment_id: str,
        amount_cents: int,
        *,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str: ...

    @abstractmethod
    def list_payments(
        self, window_start: datetime, window_end: datetime
    ) -> list[ProviderPayment]: ...

    @abstractmethod
    def verify_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> datetime | None:
        """Check the delivery signature; return the signed timestamp if any."""


def _raise_for_response(
    provider: str, operation: str, resp: httpx.Response, *, replay_safe: bool = True
) -> None:
    if resp.status_code < 400:
        return
    try:
        body = resp.json()
    except ValueError:
        body = {"raw": resp.text[:500]}
    # A 5xx after a non-idempotent write may still have been applied.
    transient = resp.status_code == 429 or (replay_safe and resp.status_code >= 500)
    logger.error(
        "%s %s failed with HTTP %s",
        provider,
        operation,
        resp.status_code,
        extra={"provider": provider},
    )
    raise GatewayError(
        f"{provider} {operation} failed",
        details={"status": resp.status_code, "body": body},
        transient=transient,
    )


class StripeGateway(PaymentGateway):
    """Stripe REST API over form-encoded httpx calls."""

    provider = "stripe"

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        base_url: str = STRIPE_BASE_URL,
        timeout: float | None = None,
    ) -> None:
        self._secret_key = settings.stripe_secret_key if secret_key is None else secret_key
        self._webhook_secret = (
            settings.stripe_webhook_secret if webhook_secret is None else webhook_secret
        )
        self._base_url = base_url
        self._timeout = timeout or settings.gateway_timeout_seconds

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        if not self.is_configured():
            raise GatewayError("Stripe is not configured")
        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.request(
                    method,
                    f"{self._base_url}{path}",
                    data=data,
                    params=params,
                    headers=self._headers(idempotency_key),
                )
        except httpx.TransportError as exc:
            raise GatewayError(
                f"stripe {operation} failed: {exc.__class__.__name__}",
                transient=True,
            ) from exc
        _raise_for_response(self.provider, operation, resp)
        result: dict[str, Any] = resp.json()
        return result

    @staticmethod
    def _metadata(metadata: dict[str, str]) -> dict[str, str]:
        return {f"metadata[{key}]": str(value) for key, value in metadata.items()}

    def create_customer(self, email: str, name: str, metadata: dict[str, str]) -> str:
        data = self._request(
            "POST",
            "/customers",
            "create_customer",
            data={"email": email, "name": name, **self._metadata(metadata)},
        )
        logger.info("Created Stripe customer: %s", data["id"])
        return data["id"]

    def create_subscription(self, customer_external_id: str, price_id: str) -> str:
        data = self._request(
            "POST",
            "/subscriptions",
            "create_subscription",
            data={"customer": customer_external_id, "items[0][price]": price_id},
        )
        return data["id"]

    def update_subscription(
        self,
        external_id: str,
        *,
        price_id: str | None = None,
        paused: bool | None = None,
    ) -> None:
        form: dict[str, Any] = {}
        if price_id:
            current = self._request(
                "GET", f"/subscriptions/{external_id}", "get_subscription"
            )
            item_id = current["items"]["data"][0]["id"]
            form["items[0][id]"] = item_id
            form["items[0][price]"] = price_id
            form["proration_behavior"] = "none"
        if paused is True:
            form["pause_collection[behavior]"] = "void"
        elif paused is False:
            form["pause_collection"] = ""
        if form:
            self._request(
                "POST", f"/subscriptions/{external_id}", "update_subscription", data=form
            )

    def cancel_subscription(self, external_id: str) -> None:
        self._request("DELETE", f"/subscriptions/{external_id}", "cancel_subscription")

    def create_invoice(
        self,
        customer_external_id: str,
        currency: str,
        lines: list[RemoteLine],
        *,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        draft = self._request(
            "POST",
            "/invoices",
            "create_invoice",
            data={
                "customer": customer_external_id,
                "currency": currency,
                "auto_advance": "false",
                "collection_method": "charge_automatically",
                "pending_invoice_items_behavior": "exclude",
                **self._metadata(metadata),
            },
            idempotency_key=idempotency_key,
        )
        for position, line in enumerate(lines):
            self._request(
                "POST",
                "/invoiceitems",
                "create_invoice_item",
                data={
                    "customer": customer_external_id,
                    "invoice": draft["id"],
                    "currency": currency,
                    "amount": line.amount_cents,
                    "description": line.description,
                },
                idempotency_key=f"{idempotency_key}:line:{position}",
            )
        return draft["id"]

    def finalize_invoice(self, draft_id: str) -> str:
        data = self._request(
            "POST", f"/invoices/{draft_id}/finalize", "finalize_invoice"
        )
        return data["id"]

    def void_invoice(self, external_id: str) -> None:
        self._request("POST", f"/invoices/{external_id}/void", "void_invoice")

    def refund(
        self,
        provider_payment_id: str,
        amount_cents: int,
        *,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str:
        target = "payment_intent" if provider_payment_id.startswith("pi_") else "charge"
        form: dict[str, Any] = {target: provider_payment_id, "amount": amount_cents}
        if reason:
            form["metadata[reason]"] = reason
        data = self._request(
            "POST", "/refunds", "refund", data=form, idempotency_key=idempotency_key
        )
        return data["id"]

    def list_payments(
        self, window_start: datetime, window_end: datetime
    ) -> list[ProviderPayment]:
        payments: list[ProviderPayment] = []
        params: dict[str, Any] = {
            "created[gte]": int(window_start.timestamp()),
            "created[lt]": int(window_end.timestamp()),
            "limit": 100,
        }
        while True:
            data = self._request("GET", "/charges", "list_payments", params=params)
            for charge in data.get("data", []):
                payments.append(
                    ProviderPayment(
                        provider_payment_id=charge.get("payment_intent") or charge["id"],
                        provider_invoice_id=charge.get("invoice"),
                        amount_cents=int(charge["amount"]),
                        currency=charge.get("currency", ""),
                        status="succeeded"
                        if charge.get("status") == "succeeded"
                        else str(charge.get("status")),
                        created_at=datetime.fromtimestamp(charge["created"], UTC),
                    )
                )
            if not data.get("has_more") or not data.get("data"):
                return payments
            params["starting_after"] = data["data"][-1]["id"]

    def verify_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> datetime | None:
        """Validate a ``Stripe-Signature: t=<ts>,v1=<hex>`` header."""
        if not self._webhook_secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured")
        header = headers.get("stripe-signature")
        if not header:
            raise WebhookVerificationError("Missing Stripe-Signature header")
        timestamp: str | None = None
        signatures: list[str] = []
        for part in header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not timestamp.isdigit() or not signatures:
            raise WebhookVerificationError("Malformed Stripe-Signature header")
        signed_payload = timestamp.encode("utf-8") + b"." + body
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"), signed_payload, hashlib.sha256
        ).hexdigest()
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise WebhookVerificationError("Stripe signature mismatch")
        return datetime.fromtimestamp(int(timestamp), UTC)


class PaystackGateway(PaymentGateway):
    """Thin wrapper around Paystack REST API."""

    provider = "paystack"

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str = PAYSTACK_BASE_URL,
        timeout: float | None = None,
    ) -> None:
        self._secret_key = (
            settings.paystack_secret_key if secret_key is None else secret_key
        )
        self._base_url = base_url
        self._timeout = timeout or settings.gateway_timeout_seconds

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    def is_configured(self) -> bool:
        return bool(self._secret_key)

    def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        replay_safe: bool = True,
    ) -> Any:
        """Paystack takes no idempotency key, so writes that would duplicate
        money movement pass ``replay_safe=False`` and are only retried when the
        request never reached the server."""
        if not self.is_configured():
            raise GatewayError("Paystack is not configured")
        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.request(
                    method,
                    f"{self._base_url}{path}",
                    json=json,
                    params=params,
                    headers=self._headers(),
                )
        except httpx.TransportError as exc:
            never_sent = isinstance(exc, httpx.ConnectError | httpx.ConnectTimeout)
            raise GatewayError(
                f"paystack {operation} failed: {exc.__class__.__name__}",
                transient=replay_safe or never_sent,
            ) from exc
        _raise_for_response(self.provider, operation, resp, replay_safe=replay_safe)
        data = resp.json()
        if not data.get("status"):
            logger.error("Paystack %s failed: %s", operation, data.get("message"))
            raise GatewayError(
                data.get("message", f"Paystack {operation} failed"),
                details={"body": data},
            )
        return data

    def create_customer(self, email: str, name: str, metadata: dict[str, str]) -> str:
        first_name, _, last_name = name.partition(" ")
        data = self._request(
            "POST",
            "/customer",
            "create_customer",
            json={
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "metadata": metadata,
            },
        )
        logger.info("Created Paystack customer: %s", data["data"]["customer_code"])
        return data["data"]["customer_code"]

    def create_subscription(self, customer_external_id: str, price_id: str) -> str:
        data = self._request(
            "POST",
            "/subscription",
            "create_subscription",
            json={"customer": customer_external_id, "plan": price_id},
            replay_safe=False,
        )
        return data["data"]["subscription_code"]

    def _email_token(self, external_id: str) -> str:
        data = self._request("GET", f"/subscription/{external_id}", "get_subscription")
        return data["data"]["email_token"]

    def update_subscription(
        self,
        external_id: str,
        *,
        price_id: str | None = None,
        paused: bool | None = None,
    ) -> None:
        if price_id:
            raise GatewayError(
                "Paystack subscriptions cannot change plan in place",
                details={"subscription": external_id},
            )
        if paused is None:
            return
        action = "disable" if paused else "enable"
        self._request(
            "POST",
            f"/subscription/{action}",
            f"{action}_subscription",
            json={"code": external_id, "token": self._email_token(external_id)},
        )

    def cancel_subscription(self, external_id: str) -> None:
        self._request(
            "POST",
            "/subscription/disable",
            "cancel_subscription",
            json={"code": external_id, "token": self._email_token(external_id)},
        )

    def create_invoice(
        self,
        customer_external_id: str,
        currency: str,
        lines: list[RemoteLine],
        *,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        data = self._request(
            "POST",
            "/paymentrequest",
            "create_invoice",
            json={
                "customer": customer_external_id,
                "currency": currency.upper(),
                "amount": sum(line.amount_cents for line in lines),
                "line_items": [
                    {"name": line.description, "amount": line.amount_cents}
                    for line in lines
                ],
                "description": metadata.get("number", idempotency_key),
                "draft": True,
            },
            replay_safe=False,
        )
        return data["data"]["request_code"]

    def finalize_invoice(self, draft_id: str) -> str:
        data = self._request(
            "POST", f"/paymentrequest/finalize/{draft_id}", "finalize_invoice"
        )
        return data["data"].get("request_code", draft_id)

    def void_invoice(self, external_id: str) -> None:
        self._request("POST", f"/paymentrequest/archive/{external_id}", "void_invoice")

    def refund(
        self,
        provider_payment_id: str,
        amount_cents: int,
        *,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "transaction": provider_payment_id,
            "amount": amount_cents,
        }
        if reason:
            payload["merchant_note"] = reason
        data = self._request("POST", "/refund", "refund", json=payload, replay_safe=False)
        return str(data["data"]["id"])

    def list_payments(
        self, window_start: datetime, window_end: datetime
    ) -> list[ProviderPayment]:
        payments: list[ProviderPayment] = []
        page = 1
        while True:
            data = self._request(
                "GET",
                "/transaction",
                "list_payments",
                params={
                    "from": window_start.isoformat(),
                    "to": window_end.isoformat(),
                    "status": "success",
                    "perPage": 100,
                    "page": page,
                },
            )
            for tx in data.get("data", []):
                tx_metadata = tx.get("metadata") or {}
                payments.append(
                    ProviderPayment(
                        provider_payment_id=tx["reference"],
                        provider_invoice_id=tx_metadata.get("request_code")
                        if isinstance(tx_metadata, dict)
                        else None,
                        amount_cents=int(tx["amount"]),
                        currency=str(tx.get("currency", "")).lower(),
                        status="succeeded",
                        created_at=datetime.fromisoformat(
                            tx["created_at"].replace("Z", "+00:00")
                        ),
                    )
                )
            meta = data.get("meta") or {}
            if page >= int(meta.get("pageCount", page)) or not data.get("data"):
                return payments
            page += 1

    def verify_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> datetime | None:
        """Validate Paystack webhook HMAC signature. Paystack signs no timestamp."""
        signature = headers.get("x-paystack-signature")
        if not signature:
            raise WebhookVerificationError("Missing x-paystack-signature header")
        if not self._secret_key:
            raise WebhookVerificationError("Paystack secret key is not configured")
        expected = hmac.new(
            self._secret_key.encode("utf-8"),
            body,
            hashlib.sha512,
        ).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise WebhookVerificationError("Paystack signature mismatch")
        return None


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.transient


class ResilientGateway(PaymentGateway):
    """Adds retries with exponential backoff and a circuit breaker to a gateway."""

    def __init__(
        self,
        gateway: PaymentGateway,
        *,
        attempts: int | None = None,
        max_wait: float | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.inner = gateway
        self.provider = gateway.provider
        self._attempts = attempts or settings.gateway_retry_attempts
        self._max_wait = settings.gateway_retry_max_wait if max_wait is None else max_wait
        self.breaker = breaker or CircuitBreaker(
            gateway.provider,
            CircuitBreakerConfig(
                failure_threshold=settings.gateway_breaker_threshold,
                timeout=settings.gateway_breaker_cooldown_seconds,
                is_failure=_is_transient,
            ),
        )

    def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempt = retry(
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=0.5, max=self._max_wait),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )(self.breaker.call)
        started = time.perf_counter()
        try:
            result = attempt(func, *args, **kwargs)
        except GatewayError as exc:
            outcome = "unavailable" if exc.status_code == 503 else "error"
            GATEWAY_CALLS.labels(
                provider=self.provider, operation=operation, outcome=outcome
            ).inc()
            raise
        finally:
            GATEWAY_LATENCY.labels(provider=self.provider, operation=operation).observe(
                time.perf_counter() - started
            )
        GATEWAY_CALLS.labels(
            provider=self.provider, operation=operation, outcome="success"
        ).inc()
        return result

    def create_customer(self, email: str, name: str, metadata: dict[str, str]) -> str:
        return self._call("create_customer", self.inner.create_customer, email, name, metadata)

    def create_subscription(self, customer_external_id: str, price_id: str) -> str:
        return self._call(
            "create_subscription",
            self.inner.create_subscription,
            customer_external_id,
            price_id,
        )

    def update_subscription(
        self,
        external_id: str,
        *,
        price_id: str | None = None,
        paused: bool | None = None,
    ) -> None:
        self._call(
            "update_subscription",
            self.inner.update_subscription,
            external_id,
            price_id=price_id,
            paused=paused,
        )

    def cancel_subscription(self, external_id: str) -> None:
        self._call("cancel_subscription", self.inner.cancel_subscription, external_id)

    def create_invoice(
        self,
        customer_external_id: str,
        currency: str,
        lines: list[RemoteLine],
        *,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        return self._call(
            "create_invoice",
            self.inner.create_invoice,
            customer_external_id,
            currency,
            lines,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )

    def finalize_invoice(self, draft_id: str) -> str:
        return self._call("finalize_invoice", self.inner.finalize_invoice, draft_id)

    def void_invoice(self, external_id: str) -> None:
        self._call("void_invoice", self.inner.void_invoice, external_id)

    def refund(
        self,
        provider_payment_id: str,
        amount_cents: int,
        *,
        idempotency_key: str,
        reason: str | None = None,
    ) -> str:
        return self._call(
            "refund",
            self.inner.refund,
            provider_payment_id,
            amount_cents,
            idempotency_key=idempotency_key,
            reason=reason,
        )

    def list_payments(
        self, window_start: datetime, window_end: datetime
    ) -> list[ProviderPayment]:
        return self._call(
            "list_payments", self.inner.list_payments, window_start, window_end
        )

    def verify_webhook(
        self, body: bytes, headers: Mapping[str, str]
    ) -> datetime | None:
        return self.inner.verify_webhook(body, headers)


_GATEWAY_FACTORIES: dict[str, Callable[[], PaymentGateway]] = {
    "stripe": StripeGateway,
    "paystack": PaystackGateway,
}
_gateways: dict[str, PaymentGateway] = {}
_gateways_lock = Lock()


def get_gateway(provider: str) -> PaymentGateway:
    factory = _GATEWAY_FACTORIES.get(provider)
    if factory is None:
        raise ValidationFailedError(
            f"Unsupported payment provider: {provider}",
            details={"allowed": sorted(_GATEWAY_FACTORIES)},
        )
    with _gateways_lock:
        gateway = _gateways.get(provider)
        if gateway is None:
            gateway = ResilientGateway(factory())
            _gateways[provider] = gateway
        return gateway


def set_gateway(provider: str, gateway: PaymentGateway | None) -> None:
    """Install a gateway for ``provider``; ``None`` restores the default."""
    with _gateways_lock:
        if gateway is None:
            _gateways.pop(provider, None)
        else:
            _gateways[provider] = gateway


def supported_providers() -> list[str]:
    return sorted(_GATEWAY_FACTORIES)
