from fastapi import Header

from app.db import SessionLocal
from app.services.billing.dispatcher import EventDispatcher, get_dispatcher


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_webhook_dispatcher() -> EventDispatcher:
    return get_dispatcher()


def idempotency_key(
    key: str | None = Header(default=None, alias="Idempotency-Key", max_length=255),
) -> str | None:
    """Client-supplied key that makes a mutating request safe to retry."""
    if key is None:
        return None
    return key.strip() or None
