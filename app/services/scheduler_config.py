import logging
from datetime import timedelta

from app.config import Settings, settings

logger = logging.getLogger(__name__)

FINALIZE_DUE_TASK = "app.tasks.billing.finalize_due_invoices"
RETRY_UNFINALIZED_TASK = "app.tasks.billing.retry_unfinalized_invoices"
RECONCILE_TASK = "app.tasks.billing.reconcile_recent_payments"
REDRIVE_TASK = "app.tasks.billing.redrive_pending_webhooks"


def get_celery_config(s: Settings = settings) -> dict:
    config = {
        "broker_url": s.celery_broker_url or s.redis_url,
        "result_backend": s.celery_result_backend or s.redis_url,
        "timezone": "UTC",
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "worker_prefetch_multiplier": 1,
    }
    return config


def _interval(seconds: int) -> timedelta:
    return timedelta(seconds=max(seconds, 1))


def build_beat_schedule(s: Settings = settings) -> dict:
    """Periodic billing jobs. Every job is safe to run twice."""
    schedule = {
        "finalize-due-invoices": {
            "task": FINALIZE_DUE_TASK,
            "schedule": _interval(s.finalize_interval_seconds),
        },
        "retry-unfinalized-invoices": {
            "task": RETRY_UNFINALIZED_TASK,
            "schedule": _interval(s.finalize_interval_seconds),
        },
        "reconcile-recent-payments": {
            "task": RECONCILE_TASK,
            "schedule": _interval(s.reconcile_interval_seconds),
            "kwargs": {"window_hours": s.reconcile_window_hours},
        },
        "redrive-pending-webhooks": {
            "task": REDRIVE_TASK,
            "schedule": _interval(s.redrive_interval_seconds),
        },
    }
    logger.debug("Built beat schedule with %d entries", len(schedule))
    return schedule
