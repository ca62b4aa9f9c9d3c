"""Create store_records table.

Backs every StorePort collection (permissions, cases, case_status_history,
case_amendments, audit_log, case_counters) as JSONB documents keyed by
(collection, record_id), with a version column for optimistic concurrency.

Revision ID: 001_store_records
Revises:
Create Date: 2026-10-18

Rollback: drop store_records table.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001_store_records"
down_revision = None
branch_labels = None
depends_on = None

_NOW = sa.text("now()")


def upgrade() -> None:
    op.create_table(
        "store_records",
        sa.Column("collection", sa.String(64), primary_key=True),
        sa.Column("record_id", sa.String(255), primary_key=True),
        sa.Column(
            "version",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
            comment="Bumped by every put; compared by versioned puts",
        ),
        sa.Column(
            "data",
            postgresql.JSONB,
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=_NOW,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=_NOW,
        ),
    )

    op.create_index(
        "ix_store_records_collection",
        "store_records",
        ["collection"],
    )
    # Containment filters: data @> '{"case_id": ...}'
    op.create_index(
        "ix_store_records_data",
        "store_records",
        ["data"],
        postgresql_using="gin",
    )


def downgrade() -> None:
    op.drop_index("ix_store_records_data", table_name="store_records")
    op.drop_index("ix_store_records_collection", table_name="store_records")
    op.drop_table("store_records")
