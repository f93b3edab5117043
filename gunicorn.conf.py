"""Gunicorn configuration for the billing API.

Usage:
    gunicorn -c gunicorn.conf.py app.main:app

Each worker runs its own webhook dispatcher, so the graceful timeout must
leave room for in-flight events to drain. Anything left queued is redriven
from the database on the next start.
"""
from __future__ import annotations

import multiprocessing
import os

# ── Server socket ────────────────────────────────────────
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")

# ── Worker processes ─────────────────────────────────────
workers = int(os.getenv("GUNICORN_WORKERS", str(multiprocessing.cpu_count() + 1)))
worker_class = "uvicorn.workers.UvicornWorker"
worker_tmp_dir = "/dev/shm"

# ── Timeouts ─────────────────────────────────────────────
# Gateway calls retry with backoff inside a request; keep the hard timeout above that.
timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))

# ── Request limits ───────────────────────────────────────
max_requests = int(os.getenv("GUNICORN_MAX_REQUESTS", "5000"))
max_requests_jitter = int(os.getenv("GUNICORN_MAX_REQUESTS_JITTER", "250"))

# Workers own threads (the dispatcher) that must not be forked from a preloaded master.
preload_app = False

# ── Logging ──────────────────────────────────────────────
accesslog = os.getenv("GUNICORN_ACCESSLOG", "-")
errorlog = os.getenv("GUNICORN_ERRORLOG", "-")
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)s "%({x-request-id}o)s"'

# ── Process naming ───────────────────────────────────────
proc_name = "meterledger"
