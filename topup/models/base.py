# topup/models/base.py
"""
Base model with common fields (SQLAlchemy 2.x, DeclarativeBase).

- Naming conventions for constraints/indexes (stable names for migrations).
- tz-aware UTC clock.
- TimestampMixin with created_at/updated_at.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, MetaData
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    """Текущее время в UTC (tz-aware)."""
    return datetime.now(UTC)


NAMING_CONVENTIONS: dict[str, str] = {
    "ix": "ix__%(table_name)s__%(column_0_N_name)s",
    "uq": "uq__%(table_name)s__%(column_0_N_name)s",
    "ck": "ck__%(table_name)s__%(constraint_name)s",
    "fk": "fk__%(table_name)s__%(column_0_N_name)s__%(referred_table_name)s",
    "pk": "pk__%(table_name)s",
}


class Base(DeclarativeBase):
    """Root declarative base with naming conventions."""

    metadata = MetaData(naming_convention=NAMING_CONVENTIONS)

    def __repr__(self) -> str:  # pragma: no cover
        cols = []
        for k in self.__mapper__.c.keys():
            v = getattr(self, k, None)
            if isinstance(v, str) and len(v) > 64:
                v = v[:61] + "..."
            cols.append(f"{k}={v!r}")
        return f"<{type(self).__name__} {' '.join(cols)}>"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )
