"""Tests for per-key billing locks and structured log output."""
from __future__ import annotations

import json
import logging
import threading
import time

from app.logging import JsonLogFormatter
from app.services.billing.locks import KeyedLocks, customer_key, invoice_period_key


def test_same_key_is_serialized():
    locks = KeyedLocks()
    order: list[str] = []
    entered = threading.Event()

    def first():
        with locks.hold("customer:1"):
            entered.set()
            time.sleep(0.05)
            order.append("first")

    def second():
        entered.wait(1)
        with locks.hold("customer:1"):
            order.append("second")

    threads = [threading.Thread(target=first), threading.Thread(target=second)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(2)
    assert order == ["first", "second"]


def test_different_keys_do_not_block():
    locks = KeyedLocks()
    with locks.hold("customer:1"):
        done = threading.Event()

        def other():
            with locks.hold("customer:2"):
                done.set()

        t = threading.Thread(target=other)
        t.start()
        assert done.wait(1)
        t.join(1)


def test_locks_are_released_and_forgotten():
    locks = KeyedLocks()
    with locks.hold("b", "a", "a"):
        assert locks.active_keys() == ["a", "b"]
    assert locks.active_keys() == []


def test_lock_released_when_body_raises():
    locks = KeyedLocks()
    try:
        with locks.hold("customer:9"):
            raise RuntimeError("boom")
    except RuntimeError:
        pass
    assert locks.active_keys() == []


def test_key_builders():
    assert customer_key("c1") == "customer:c1"
    assert invoice_period_key("s1", "a", "b") == "invoice:s1:a:b"


def test_json_formatter_includes_billing_context():
    record = logging.LogRecord("app.billing", logging.INFO, __file__, 1, "Paid %s", ("in_1",), None)
    record.invoice_id = "inv-1"
    record.provider = "stripe"
    record.status = 200
    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["message"] == "Paid in_1"
    assert payload["level"] == "INFO"
    assert payload["invoice_id"] == "inv-1"
    assert payload["provider"] == "stripe"
    assert payload["status"] == 200
    assert "request_id" not in payload
