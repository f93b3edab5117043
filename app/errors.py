"""Billing error taxonomy and structured error handlers.

Every error response includes a consistent envelope:
    {
        "code": "error_code",
        "message": "Human-readable message",
        "details": null | object,
        "request_id": "uuid"
    }
"""
from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for errors raised by billing services."""

    status_code = 400
    code = "billing_error"

    def __init__(self, message: str, details: object = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationFailedError(BillingError):
    status_code = 422
    code = "validation_error"


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class ConflictError(BillingError):
    status_code = 409
    code = "conflict"


class GatewayError(BillingError):
    """Provider call failed. ``transient`` marks failures worth retrying."""

    status_code = 502
    code = "gateway_error"

    def __init__(
        self, message: str, details: object = None, *, transient: bool = False
    ) -> None:
        super().__init__(message, details)
        self.transient = transient


class GatewayUnavailableError(GatewayError):
    status_code = 503
    code = "gateway_unavailable"


class WebhookVerificationError(BillingError):
    status_code = 401
    code = "auth_failed"


class RateLimitedError(BillingError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: str, retry_after: int, details: object = None) -> None:
        super().__init__(message, details)
        self.retry_after = retry_after


class EventOutOfOrderError(ConflictError):
    """The event refers to an object not recorded yet; processing is retried."""

    code = "event_out_of_order"


class LedgerDiscrepancyError(BillingError):
    status_code = 500
    code = "ledger_discrepancy"


class LedgerImmutableError(BillingError):
    status_code = 409
    code = "ledger_immutable"


def _get_request_id(request: Request) -> str:
    """Extract request_id set by ObservabilityMiddleware."""
    return getattr(request.state, "request_id", "unknown")


def _error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict:
    return {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }


def register_error_handlers(app: object) -> None:
    @app.exception_handler(BillingError)  # type: ignore[arg-type]
    async def billing_exception_handler(
        request: Request, exc: BillingError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "Billing error on %s %s: %s (%s)",
            request.method,
            request.url.path,
            exc.code,
            exc.message,
            extra={"request_id": request_id},
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.code, exc.message, exc.details, request_id),
            headers=headers,
        )

    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details, request_id),
        )

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                "validation_error",
                "Validation error",
                jsonable_errors(exc),
                request_id,
            ),
        )

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                "internal_error",
                "Internal server error",
                None,
                request_id,
            ),
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # pydantic may put exception objects under "ctx"
    errors = []
    for error in exc.errors():
        item = {key: value for key, value in error.items() if key != "ctx"}
        if "ctx" in error:
            item["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        errors.append(item)
    return errors
