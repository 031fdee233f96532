"""Declarative base, column types and mixins for submission models."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import String, TypeDecorator

from app.core.ids import generate_cuid

# JSONB on Postgres, plain JSON elsewhere (SQLite in local runs).
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CuidString(TypeDecorator):
    """CUID (or external user id) stored as a short string column."""

    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        return None if value is None else str(value).strip()

    def process_result_value(self, value: Any, dialect: Any) -> str | None:
        return None if value is None else str(value)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class CuidPrimaryKeyMixin:
    """Time-ordered CUID primary key, generated client side."""

    id: Mapped[str] = mapped_column(
        CuidString(),
        primary_key=True,
        default=generate_cuid,
    )


class TimestampMixin:
    """created_at / updated_at, stamped in Python so unflushed rows carry them too."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utc_now,
        server_default=func.now(),
        onupdate=_utc_now,
        nullable=False,
    )

    def touch(self) -> datetime:
        """Bump updated_at and return the new value."""
        self.updated_at = _utc_now()
        return self.updated_at
