"""Base SQLAlchemy configuration and mixins."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all configuration tables.

    Column types are kept dialect-neutral (generic ``JSON`` rather than
    PostgreSQL ``JSONB``) because the same metadata is created on SQLite and
    on PostgreSQL, and rows are bulk-copied between the two.
    """

    type_annotation_map: dict[type, Any] = {
        datetime: DateTime(timezone=True),
    }


class RowIDMixin:
    """Mixin that adds an autoincrementing integer row id.

    Row ids are storage identity only. Callers address rows by their natural
    key (name, key id); the row id orders rows by age for duplicate repair.
    """

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
        comment="Storage row id",
    )


class StringIDMixin:
    """Mixin that adds a caller-assignable string primary key."""

    id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        default=new_id,
        comment="Stable identifier (caller-assigned or UUID v4)",
    )


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        comment="Timestamp when the record was created",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Timestamp when the record was last updated",
    )
