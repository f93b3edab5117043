from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

from app.config import settings
from app.services import scheduler_config


def test_celery_config_reliability_flags():
    config = scheduler_config.get_celery_config(
        replace(settings, celery_broker_url="redis://broker/1", celery_result_backend="")
    )
    assert config["broker_url"] == "redis://broker/1"
    assert config["result_backend"] == settings.redis_url
    assert config["timezone"] == "UTC"
    assert config["task_acks_late"] is True
    assert config["worker_prefetch_multiplier"] == 1


def test_beat_schedule_has_every_billing_job():
    schedule = scheduler_config.build_beat_schedule(settings)
    assert {entry["task"] for entry in schedule.values()} == {
        scheduler_config.FINALIZE_DUE_TASK,
        scheduler_config.RETRY_UNFINALIZED_TASK,
        scheduler_config.RECONCILE_TASK,
        scheduler_config.REDRIVE_TASK,
    }


def test_beat_schedule_intervals_follow_settings():
    s = replace(
        settings,
        finalize_interval_seconds=120,
        reconcile_interval_seconds=0,
        reconcile_window_hours=6,
        redrive_interval_seconds=30,
    )
    schedule = scheduler_config.build_beat_schedule(s)
    assert schedule["finalize-due-invoices"]["schedule"] == timedelta(seconds=120)
    assert schedule["redrive-pending-webhooks"]["schedule"] == timedelta(seconds=30)
    # Intervals never drop below one second.
    assert schedule["reconcile-recent-payments"]["schedule"] == timedelta(seconds=1)
    assert schedule["reconcile-recent-payments"]["kwargs"] == {"window_hours": 6}


def test_task_names_are_registered():
    from app.celery_app import celery_app

    celery_app.loader.import_default_modules()
    assert scheduler_config.FINALIZE_DUE_TASK in celery_app.tasks
    assert scheduler_config.REDRIVE_TASK in celery_app.tasks
