"""Shared service utilities: UUID coercion, ordering, pagination, time."""
from __future__ import annotations

import calendar
import enum
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy import Select

from app.errors import ValidationFailedError

T = TypeVar("T")
E = TypeVar("E", bound=enum.Enum)


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationFailedError(f"Invalid identifier: {value}") from exc


def require_uuid(value: Any) -> uuid.UUID:
    """Convert a string or UUID to UUID, raising ValueError if None."""
    result = coerce_uuid(value)
    if result is None:
        raise ValueError("UUID value is required but got None")
    return result


def validate_enum(value: Any, enum_cls: type[E], field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in enum_cls)
        raise ValidationFailedError(
            f"Invalid {field}. Allowed: {allowed}"
        ) from exc


def apply_ordering(
    query: Select[Any],
    order_by: str,
    order_dir: str,
    allowed_columns: dict[str, Any],
) -> Select[Any]:
    """Apply ordering to a select statement with validation."""
    if order_by not in allowed_columns:
        raise ValidationFailedError(
            f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}"
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query: Select[Any], limit: int, offset: int) -> Select[Any]:
    """Apply limit/offset to a select statement."""
    return query.limit(limit).offset(offset)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and normalize aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def advance_period(start: datetime, cycle: str, count: int = 1) -> datetime:
    """Return the end of a billing period of ``count`` cycles starting at ``start``."""
    if cycle == "day":
        return start + timedelta(days=count)
    if cycle == "week":
        return start + timedelta(weeks=count)
    months = count * (12 if cycle == "year" else 1)
    if cycle not in {"month", "year"}:
        raise ValidationFailedError(f"Unsupported billing cycle: {cycle}")
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)
