"""Tests for the periodic billing jobs."""

from __future__ import annotations

from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from app.errors import GatewayError, ValidationFailedError
from app.tasks import billing as billing_tasks


@pytest.fixture
def session_mock():
    session = MagicMock(name="task_session")
    with patch.object(billing_tasks, "SessionLocal", return_value=session):
        yield session


def _subscription(sub_id: str) -> SimpleNamespace:
    return SimpleNamespace(
        id=sub_id,
        current_period_start=datetime(2026, 1, 1, tzinfo=UTC),
        current_period_end=datetime(2026, 2, 1, tzinfo=UTC),
    )


def test_finalize_due_invoices_counts_outcomes(session_mock):
    due = [_subscription("s1"), _subscription("s2"), _subscription("s3")]
    with (
        patch.object(billing_tasks.subscriptions, "due_for_invoicing", return_value=due),
        patch.object(
            billing_tasks.invoices,
            "finalize",
            side_effect=[
                MagicMock(),
                GatewayError("stripe down", transient=True),
                ValidationFailedError("bad period"),
            ],
        ) as finalize,
    ):
        result = billing_tasks.finalize_due_invoices()

    assert result == {"finalized": 1, "failed": 2}
    assert finalize.call_args_list[0].args == (
        session_mock,
        "s1",
        datetime(2026, 1, 1, tzinfo=UTC),
        datetime(2026, 2, 1, tzinfo=UTC),
    )
    # Only the non-gateway failure discards the session state.
    session_mock.rollback.assert_called_once()
    session_mock.close.assert_called_once()


def test_finalize_due_invoices_respects_limit(session_mock):
    due = [_subscription(f"s{i}") for i in range(5)]
    with (
        patch.object(billing_tasks.subscriptions, "due_for_invoicing", return_value=due),
        patch.object(billing_tasks.invoices, "finalize") as finalize,
    ):
        result = billing_tasks.finalize_due_invoices(limit=2)
    assert result["finalized"] == 2
    assert finalize.call_count == 2


def test_retry_unfinalized_invoices(session_mock):
    pending = [SimpleNamespace(id="i1"), SimpleNamespace(id="i2")]
    with (
        patch.object(billing_tasks.invoices, "unfinalized", return_value=pending),
        patch.object(
            billing_tasks.invoices,
            "retry_finalize",
            side_effect=[MagicMock(), GatewayError("still down", transient=True)],
        ),
    ):
        result = billing_tasks.retry_unfinalized_invoices()
    assert result == {"retried": 1, "failed": 1}
    session_mock.close.assert_called_once()


def test_reconcile_recent_payments_skips_failing_provider(session_mock, monkeypatch):
    monkeypatch.setattr(billing_tasks, "_configured_providers", lambda: ["stripe", "paystack"])
    report = SimpleNamespace(findings=[object(), object()])

    def _reconcile(db, provider, start, end):
        if provider == "paystack":
            raise GatewayError("paystack down", transient=True)
        assert (end - start).total_seconds() == 6 * 3600
        return report

    with patch.object(billing_tasks.payment_matcher, "reconcile", side_effect=_reconcile):
        result = billing_tasks.reconcile_recent_payments(window_hours=6)

    assert result == {"stripe": 2}
    session_mock.rollback.assert_called_once()


def test_configured_providers_follow_settings(monkeypatch):
    from dataclasses import replace

    monkeypatch.setattr(
        billing_tasks,
        "settings",
        replace(billing_tasks.settings, stripe_secret_key="sk", paystack_secret_key=""),
    )
    assert billing_tasks._configured_providers() == ["stripe"]


def test_redrive_pending_webhooks_processes_inline(session_mock):
    with patch.object(billing_tasks, "redrive_pending", return_value=3) as redrive:
        assert billing_tasks.redrive_pending_webhooks(min_age_seconds=5, limit=10) == 3
    redrive.assert_called_once_with(session_mock, min_age_seconds=5, limit=10)
    session_mock.close.assert_called_once()
