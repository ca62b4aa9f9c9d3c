"""ORM model schema assertion tests.

Verifies SQLAlchemy ORM models match migration DDL exactly.
These tests catch drift between models.py and migration files.
"""

from __future__ import annotations

import pytest
from sqlalchemy.dialects import postgresql

from src.infra.models import Base, StoreRecord


def _col_names(model) -> set[str]:
    """Extract column names from a SQLAlchemy model."""
    return {c.name for c in model.__table__.columns}


@pytest.mark.unit
class TestStoreRecordModel:
    """Verify StoreRecord ORM matches 001 migration."""

    def test_tablename(self) -> None:
        assert StoreRecord.__tablename__ == "store_records"

    def test_columns(self) -> None:
        assert _col_names(StoreRecord) == {
            "collection",
            "record_id",
            "version",
            "data",
            "created_at",
            "updated_at",
        }

    def test_composite_primary_key(self) -> None:
        pk_cols = [c.name for c in StoreRecord.__table__.primary_key.columns]
        assert pk_cols == ["collection", "record_id"]

    def test_data_is_jsonb(self) -> None:
        assert isinstance(StoreRecord.__table__.c.data.type, postgresql.JSONB)

    def test_version_not_nullable(self) -> None:
        assert StoreRecord.__table__.c.version.nullable is False

    def test_timestamps_timezone_aware(self) -> None:
        assert StoreRecord.__table__.c.created_at.type.timezone is True
        assert StoreRecord.__table__.c.updated_at.type.timezone is True

    def test_indexes(self) -> None:
        names = {ix.name for ix in StoreRecord.__table__.indexes}
        assert names == {"ix_store_records_collection", "ix_store_records_data"}

    def test_registered_on_base(self) -> None:
        assert "store_records" in Base.metadata.tables
