"""Tests for list responses, ordering and common service utilities."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime, timedelta, timezone

import pytest
from sqlalchemy import Integer, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from app.errors import ValidationFailedError
from app.services.common import (
    advance_period,
    apply_ordering,
    apply_pagination,
    as_utc,
    coerce_uuid,
    require_uuid,
    validate_enum,
)
from app.services.response import ListResponseMixin, list_response

# ── Test DB setup ────────────────────────────────────────


class _Base(DeclarativeBase):
    pass


class _Item(_Base):
    __tablename__ = "items"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(80))


_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_Base.metadata.create_all(_engine)
_SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False)


@pytest.fixture
def db() -> Session:
    session = _SessionLocal()
    # Seed data
    for i in range(50):
        session.add(_Item(name=f"Item {i:03d}"))
    session.commit()
    yield session
    session.close()
    # Clean up
    with _SessionLocal() as s:
        s.query(_Item).delete()
        s.commit()


class _Color(enum.Enum):
    red = "red"
    blue = "blue"


class TestCoerceUuid:
    def test_none_returns_none(self) -> None:
        assert coerce_uuid(None) is None

    def test_uuid_passthrough(self) -> None:
        u = uuid.uuid4()
        assert coerce_uuid(u) is u

    def test_string_to_uuid(self) -> None:
        s = "12345678-1234-5678-1234-567812345678"
        result = coerce_uuid(s)
        assert isinstance(result, uuid.UUID)
        assert str(result) == s

    def test_invalid_string_raises(self) -> None:
        with pytest.raises(ValidationFailedError):
            coerce_uuid("not-a-uuid")

    def test_require_uuid_rejects_none(self) -> None:
        with pytest.raises(ValueError):
            require_uuid(None)


class TestValidateEnum:
    def test_valid_value(self) -> None:
        assert validate_enum("red", _Color, "color") is _Color.red

    def test_invalid_value_lists_allowed(self) -> None:
        with pytest.raises(ValidationFailedError, match="Allowed: red, blue"):
            validate_enum("green", _Color, "color")


class TestApplyOrdering:
    def test_valid_asc(self, db: Session) -> None:
        query = select(_Item)
        allowed = {"name": _Item.name, "id": _Item.id}
        ordered = apply_ordering(query, "name", "asc", allowed)
        items = list(db.scalars(ordered).all())
        assert items[0].name == "Item 000"

    def test_valid_desc(self, db: Session) -> None:
        query = select(_Item)
        allowed = {"name": _Item.name, "id": _Item.id}
        ordered = apply_ordering(query, "name", "desc", allowed)
        items = list(db.scalars(ordered).all())
        assert items[0].name == "Item 049"

    def test_invalid_column_raises(self) -> None:
        with pytest.raises(ValidationFailedError) as exc_info:
            apply_ordering(select(_Item), "invalid", "asc", {"name": _Item.name})
        assert exc_info.value.status_code == 422


class TestApplyPagination:
    def test_limit_offset(self, db: Session) -> None:
        query = select(_Item).order_by(_Item.id)
        paginated = apply_pagination(query, limit=5, offset=10)
        items = list(db.scalars(paginated).all())
        assert len(items) == 5
        assert items[0].name == "Item 010"

    def test_beyond_last_page(self, db: Session) -> None:
        query = select(_Item).order_by(_Item.id)
        assert list(db.scalars(apply_pagination(query, limit=10, offset=999)).all()) == []


class TestListResponse:
    def test_envelope(self) -> None:
        result = list_response([1, 2], limit=10, offset=0, total=12)
        assert result == {"items": [1, 2], "count": 2, "limit": 10, "offset": 0, "total": 12}

    def test_total_defaults_to_count(self) -> None:
        assert list_response([1], limit=10, offset=0)["total"] == 1

    def test_mixin_unpacks_tuple_results(self) -> None:
        class _Service(ListResponseMixin):
            @staticmethod
            def list(db, kind, limit, offset):
                return ([kind] * limit, 42)

        result = _Service().list_response(None, "x", 3, 6)
        assert result["items"] == ["x", "x", "x"]
        assert result["total"] == 42
        assert result["offset"] == 6


class TestTimeHelpers:
    def test_as_utc_attaches_zone_to_naive(self) -> None:
        assert as_utc(datetime(2026, 1, 1)) == datetime(2026, 1, 1, tzinfo=UTC)

    def test_as_utc_converts_aware(self) -> None:
        lagos = timezone(timedelta(hours=1))
        assert as_utc(datetime(2026, 1, 1, 1, tzinfo=lagos)) == datetime(2026, 1, 1, tzinfo=UTC)

    @pytest.mark.parametrize(
        ("start", "cycle", "expected"),
        [
            (datetime(2026, 1, 31, tzinfo=UTC), "month", datetime(2026, 2, 28, tzinfo=UTC)),
            (datetime(2026, 12, 15, tzinfo=UTC), "month", datetime(2027, 1, 15, tzinfo=UTC)),
            (datetime(2028, 2, 29, tzinfo=UTC), "year", datetime(2029, 2, 28, tzinfo=UTC)),
            (datetime(2026, 1, 1, tzinfo=UTC), "week", datetime(2026, 1, 8, tzinfo=UTC)),
            (datetime(2026, 1, 1, tzinfo=UTC), "day", datetime(2026, 1, 2, tzinfo=UTC)),
        ],
    )
    def test_advance_period(self, start, cycle, expected) -> None:
        assert advance_period(start, cycle) == expected

    def test_advance_period_rejects_unknown_cycle(self) -> None:
        with pytest.raises(ValidationFailedError):
            advance_period(datetime(2026, 1, 1, tzinfo=UTC), "fortnight")
