from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import JSONResponse, Response

from app.api.billing import router as billing_router
from app.api.webhooks import router as webhooks_router
from app.config import settings, validate_settings
from app.db import SessionLocal
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.middleware.rate_limit import RateLimitMiddleware
from app.observability import ObservabilityMiddleware
from app.services.billing.dispatcher import get_dispatcher
from app.services.billing.webhooks import redrive_pending
from app.telemetry import setup_otel

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[arg-type]
    # ── Startup ──────────────────────────────────────────
    warnings = validate_settings(settings)
    for w in warnings:
        logger.warning("Config warning: %s", w)

    dispatcher = get_dispatcher() if settings.dispatcher_enabled else None
    if dispatcher is not None:
        dispatcher.start()
        # Events accepted before a crash or restart are still pending.
        db = SessionLocal()
        try:
            redrive_pending(db, dispatcher)
        except Exception:
            logger.exception("Startup webhook redrive failed")
        finally:
            db.close()

    logger.info("Application started (pid=%s)", os.getpid())
    yield

    # ── Shutdown ─────────────────────────────────────────
    logger.info("Application shutting down")
    if dispatcher is not None:
        dispatcher.stop()


app = FastAPI(title="Meterledger Billing API", lifespan=lifespan)

configure_logging()
setup_otel(app)

# ── Middleware (order matters: last added = first executed) ──
register_error_handlers(app)

cors_origins = [
    o.strip()
    for o in settings.cors_origins.split(",")
    if o.strip()
]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "X-RateLimit-Remaining", "Retry-After"],
    )

app.add_middleware(RateLimitMiddleware)
app.add_middleware(ObservabilityMiddleware)


def _include_api_router(router: object, dependencies: list[Any] | None = None) -> None:
    app.include_router(router, dependencies=dependencies)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)  # type: ignore[arg-type]


_include_api_router(billing_router)
_include_api_router(webhooks_router)


# ── Health Checks ────────────────────────────────────────


@app.get("/health")
def health_check() -> dict[str, str]:
    """Liveness probe. Always ok while the process is running."""
    return {"status": "ok"}


@app.get("/health/ready")
def readiness_check() -> JSONResponse:
    """Readiness probe: database, Redis and the webhook dispatcher."""
    checks: dict[str, str] = {}

    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            checks["database"] = "ok"
        finally:
            db.close()
    except Exception as e:
        checks["database"] = f"error: {e}"

    if settings.idempotency_backend == "redis":
        try:
            import redis as redis_lib

            r = redis_lib.Redis.from_url(
                settings.redis_url, decode_responses=True, socket_timeout=2
            )
            r.ping()
            checks["redis"] = "ok"
        except Exception as e:
            checks["redis"] = f"error: {e}"

    if settings.dispatcher_enabled:
        checks["dispatcher"] = "ok" if get_dispatcher().running else "error: not running"

    all_ok = all(v == "ok" for v in checks.values())
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ok" if all_ok else "degraded", "checks": checks},
    )


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
