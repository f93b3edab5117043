"""Periodic billing jobs.

Each task opens its own session and works item by item, so one failing
subscription or provider never blocks the rest of the batch. All of them are
idempotent and safe to run concurrently with the API.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta

from celery import shared_task

from app.config import settings
from app.db import SessionLocal
from app.errors import BillingError, GatewayError
from app.services.billing.invoices import invoices
from app.services.billing.payments import payment_matcher
from app.services.billing.subscriptions import subscriptions
from app.services.billing.webhooks import redrive_pending
from app.services.common import as_utc
from app.services.scheduler_config import (
    FINALIZE_DUE_TASK,
    RECONCILE_TASK,
    REDRIVE_TASK,
    RETRY_UNFINALIZED_TASK,
)

logger = logging.getLogger(__name__)


def _configured_providers() -> list[str]:
    keys = {
        "stripe": settings.stripe_secret_key,
        "paystack": settings.paystack_secret_key,
    }
    return [provider for provider, key in keys.items() if key]


@shared_task(name=FINALIZE_DUE_TASK)
def finalize_due_invoices(limit: int = 200) -> dict:
    """Invoice every subscription whose current period has ended."""
    finalized = failed = 0
    db = SessionLocal()
    try:
        due = subscriptions.due_for_invoicing(db)[:limit]
        for subscription in due:
            subscription_id = str(subscription.id)
            start = as_utc(subscription.current_period_start)
            end = as_utc(subscription.current_period_end)
            try:
                invoices.finalize(db, subscription_id, start, end)
                finalized += 1
            except GatewayError:
                # Invoice is committed locally; retry_unfinalized_invoices picks it up.
                failed += 1
            except BillingError as exc:
                db.rollback()
                failed += 1
                logger.error(
                    "Finalize failed for subscription %s: %s",
                    subscription_id,
                    exc.message,
                )
    finally:
        db.close()
    logger.info("Finalize run: %d finalized, %d failed", finalized, failed)
    return {"finalized": finalized, "failed": failed}


@shared_task(name=RETRY_UNFINALIZED_TASK)
def retry_unfinalized_invoices(limit: int = 100) -> dict:
    """Push open invoices that never reached the provider."""
    retried = failed = 0
    db = SessionLocal()
    try:
        for invoice in invoices.unfinalized(db, limit=limit):
            try:
                invoices.retry_finalize(db, str(invoice.id))
                retried += 1
            except BillingError as exc:
                db.rollback()
                failed += 1
                logger.warning(
                    "Remote finalize retry failed: %s",
                    exc.message,
                    extra={"invoice_id": str(invoice.id)},
                )
    finally:
        db.close()
    return {"retried": retried, "failed": failed}


@shared_task(name=RECONCILE_TASK)
def reconcile_recent_payments(window_hours: int | None = None) -> dict:
    hours = window_hours or settings.reconcile_window_hours
    window_end = datetime.now(UTC)
    window_start = window_end - timedelta(hours=hours)
    findings: dict[str, int] = {}
    db = SessionLocal()
    try:
        for provider in _configured_providers():
            try:
                report = payment_matcher.reconcile(db, provider, window_start, window_end)
            except GatewayError as exc:
                db.rollback()
                logger.error(
                    "Reconciliation skipped for %s: %s",
                    provider,
                    exc.message,
                    extra={"provider": provider},
                )
                continue
            findings[provider] = len(report.findings)
    finally:
        db.close()
    return findings


@shared_task(name=REDRIVE_TASK)
def redrive_pending_webhooks(min_age_seconds: int = 60, limit: int = 500) -> int:
    """Process webhook events the in-process dispatcher never finished."""
    db = SessionLocal()
    try:
        return redrive_pending(db, min_age_seconds=min_age_seconds, limit=limit)
    finally:
        db.close()
