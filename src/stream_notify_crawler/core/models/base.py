"""SQLAlchemy declarative base and shared mixins for the crawler's tables.

Provides:
- Base: the DeclarativeBase subclass all models inherit from
- TimestampMixin: created_at / updated_at columns with database-side defaults

Column types fall back to portable variants on SQLite so the repository can be
exercised against ``aiosqlite`` in tests.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonDocument = JSONB().with_variant(sa.JSON(), "sqlite")
Timestamp = TIMESTAMP(timezone=True).with_variant(sa.DateTime(timezone=True), "sqlite")


class Base(DeclarativeBase):
    """Shared declarative base for all crawler models."""

    type_annotation_map = {
        datetime: Timestamp,
        dict[str, Any]: JsonDocument,
    }


class TimestampMixin:
    """Adds created_at and updated_at columns.

    The server default only fires on INSERT; ``onupdate`` covers the ORM
    UPDATE path.
    """

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        server_default=sa.func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        server_default=sa.func.now(),
        onupdate=sa.func.now(),
    )
