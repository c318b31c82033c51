"""Invoice memory baseline schema

Revision ID: 20261017_invoice_memory_baseline
Revises:
Create Date: 2026-10-17 09:00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20261017_invoice_memory_baseline"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "invoice_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("invoice_id", sa.String(), nullable=False),
        sa.Column("vendor", sa.String(), nullable=False),
        sa.Column("dataset", sa.String(), nullable=False),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.Column("invoice_number", sa.String()),
        sa.Column("fingerprint", sa.Text(), nullable=False),
        sa.Column("is_duplicate", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("duplicate_of_invoice_id", sa.String()),
    )
    op.create_index("ix_invoice_runs_vendor_number", "invoice_runs", ["vendor", "invoice_number"])

    op.create_table(
        "vendor_memory",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("vendor", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("pattern", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("support_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reject_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_used_at", sa.Text()),
        sa.Column("status", sa.String(), nullable=False, server_default=sa.text("'active'")),
        sa.Column("created_at", sa.Text(), nullable=False),
    )
    op.create_index("ix_vendor_memory_key", "vendor_memory", ["vendor", "kind", "pattern"])

    # status arrives with 20261017_memory_status_columns
    op.create_table(
        "correction_memory",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("vendor", sa.String(), nullable=False),
        sa.Column("field_path", sa.String(), nullable=False),
        sa.Column("pattern_type", sa.String(), nullable=False),
        sa.Column("pattern_value", sa.Text(), nullable=False),
        sa.Column("recommended_value", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("support_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("reject_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_used_at", sa.Text()),
        sa.Column("created_at", sa.Text(), nullable=False),
    )
    op.create_index(
        "ix_correction_memory_key",
        "correction_memory",
        ["vendor", "field_path", "pattern_type", "pattern_value"],
    )

    # disabled_at arrives with 20261017_memory_status_columns
    op.create_table(
        "resolution_memory",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("vendor", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("tally", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("reject_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_used_at", sa.Text()),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.UniqueConstraint("vendor", "key", name="uq_resolution_memory_vendor_key"),
    )

    op.create_table(
        "duplicate_records",
        sa.Column("invoice_id", sa.String(), primary_key=True),
        sa.Column("vendor", sa.String(), nullable=False),
        sa.Column("fingerprint", sa.Text(), nullable=False),
        sa.Column("duplicate_of_invoice_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_at", sa.Text(), nullable=False),
    )
    op.create_index("ix_duplicate_records_fingerprint", "duplicate_records", ["vendor", "fingerprint"])

    op.create_table(
        "learning_events",
        sa.Column("invoice_id", sa.String(), primary_key=True),
        sa.Column("decision", sa.String(), nullable=False),
        sa.Column("learned_at", sa.Text(), nullable=False),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("ts", sa.Text(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("vendor", sa.String()),
        sa.Column("invoice_id", sa.String()),
        sa.Column("entity_type", sa.String()),
        sa.Column("entity_id", sa.String()),
        sa.Column("meta", sa.JSON()),
    )


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("learning_events")
    op.drop_index("ix_duplicate_records_fingerprint", table_name="duplicate_records")
    op.drop_table("duplicate_records")
    op.drop_table("resolution_memory")
    op.drop_index("ix_correction_memory_key", table_name="correction_memory")
    op.drop_table("correction_memory")
    op.drop_index("ix_vendor_memory_key", table_name="vendor_memory")
    op.drop_table("vendor_memory")
    op.drop_index("ix_invoice_runs_vendor_number", table_name="invoice_runs")
    op.drop_table("invoice_runs")
