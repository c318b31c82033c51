"""Explicit status for correction memory, disabled_at for resolution memory

Revision ID: 20261017_memory_status_columns
Revises: 20261017_invoice_memory_baseline
Create Date: 2026-10-17 09:30:00

Databases still on the baseline keep working: the stores detect both columns
at engine start and derive disablement from reject counts without them.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "20261017_memory_status_columns"
down_revision: str | None = "20261017_invoice_memory_baseline"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _columns(table: str) -> set[str]:
    inspector = sa.inspect(op.get_bind())
    return {column["name"] for column in inspector.get_columns(table)}


def upgrade() -> None:
    if "status" not in _columns("correction_memory"):
        with op.batch_alter_table("correction_memory") as batch:
            batch.add_column(sa.Column("status", sa.String(), server_default=sa.text("'active'")))
        op.execute("UPDATE correction_memory SET status = 'disabled' WHERE reject_count >= 2")

    if "disabled_at" not in _columns("resolution_memory"):
        with op.batch_alter_table("resolution_memory") as batch:
            batch.add_column(sa.Column("disabled_at", sa.Text()))


def downgrade() -> None:
    with op.batch_alter_table("resolution_memory") as batch:
        batch.drop_column("disabled_at")
    with op.batch_alter_table("correction_memory") as batch:
        batch.drop_column("status")
