"""SQLAlchemy ORM models for the case booking core.

Maps to migration DDL in migrations/versions/:
  001_create_store_records.py -> StoreRecord

The core is transport-agnostic: every collection of the StorePort
(permissions, cases, case_status_history, case_amendments, audit_log,
case_counters) is one partition of a single JSONB document table keyed by
(collection, record_id), with a version column for optimistic concurrency.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 -- SQLAlchemy resolves Mapped[] annotations at runtime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

_NOW = sa.text("now()")


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class StoreRecord(Base):
    """One document of one StorePort collection.

    See: 001_create_store_records migration
    """

    __tablename__ = "store_records"

    collection: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    record_id: Mapped[str] = mapped_column(sa.String(255), primary_key=True)
    version: Mapped[int] = mapped_column(
        sa.Integer(),
        nullable=False,
        server_default=sa.text("1"),
    )
    data: Mapped[dict[str, Any]] = mapped_column(
        postgresql.JSONB(),
        nullable=False,
        server_default=sa.text("'{}'::jsonb"),
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=_NOW,
    )

    __table_args__ = (
        sa.Index("ix_store_records_collection", "collection"),
        sa.Index("ix_store_records_data", "data", postgresql_using="gin"),
    )
