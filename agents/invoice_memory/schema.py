"""Persisted tables of the invoice memory pipeline (SQLAlchemy Core).

Timestamps are stored as ISO-8601 UTC strings, confidences as floats rounded
to four decimals. Two columns are optional in older databases
(``correction_memory.status`` and ``resolution_memory.disabled_at``); which of
them exist is detected once per engine and handed to the stores as an
immutable :class:`StoreCapabilities`.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.engine import Engine

from backend.core.config import settings

_METADATA = sa.MetaData()

INVOICE_RUNS_TABLE = sa.Table(
    "invoice_runs",
    _METADATA,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("invoice_id", sa.String(), nullable=False),
    sa.Column("vendor", sa.String(), nullable=False),
    sa.Column("dataset", sa.String(), nullable=False),
    sa.Column("created_at", sa.Text(), nullable=False),
    sa.Column("invoice_number", sa.String()),
    sa.Column("fingerprint", sa.Text(), nullable=False),
    sa.Column("is_duplicate", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("duplicate_of_invoice_id", sa.String()),
    sa.Index("ix_invoice_runs_vendor_number", "vendor", "invoice_number"),
)

VENDOR_MEMORY_TABLE = sa.Table(
    "vendor_memory",
    _METADATA,
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
    sa.Index("ix_vendor_memory_key", "vendor", "kind", "pattern"),
)

CORRECTION_MEMORY_TABLE = sa.Table(
    "correction_memory",
    _METADATA,
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
    # optional in older databases
    sa.Column("status", sa.String(), server_default=sa.text("'active'")),
    sa.Index("ix_correction_memory_key", "vendor", "field_path", "pattern_type", "pattern_value"),
)

RESOLUTION_MEMORY_TABLE = sa.Table(
    "resolution_memory",
    _METADATA,
    sa.Column("id", sa.String(), primary_key=True),
    sa.Column("vendor", sa.String(), nullable=False),
    sa.Column("key", sa.String(), nullable=False),
    sa.Column("tally", sa.Text(), nullable=False),
    sa.Column("confidence", sa.Float(), nullable=False),
    sa.Column("reject_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("last_used_at", sa.Text()),
    sa.Column("created_at", sa.Text(), nullable=False),
    # optional in older databases
    sa.Column("disabled_at", sa.Text()),
    sa.UniqueConstraint("vendor", "key", name="uq_resolution_memory_vendor_key"),
)

DUPLICATE_RECORDS_TABLE = sa.Table(
    "duplicate_records",
    _METADATA,
    sa.Column("invoice_id", sa.String(), primary_key=True),
    sa.Column("vendor", sa.String(), nullable=False),
    sa.Column("fingerprint", sa.Text(), nullable=False),
    sa.Column("duplicate_of_invoice_id", sa.String(), nullable=False),
    sa.Column("reason", sa.Text(), nullable=False),
    sa.Column("created_at", sa.Text(), nullable=False),
    sa.Index("ix_duplicate_records_fingerprint", "vendor", "fingerprint"),
)

LEARNING_EVENTS_TABLE = sa.Table(
    "learning_events",
    _METADATA,
    sa.Column("invoice_id", sa.String(), primary_key=True),
    sa.Column("decision", sa.String(), nullable=False),
    sa.Column("learned_at", sa.Text(), nullable=False),
)

AUDIT_EVENTS_TABLE = sa.Table(
    "audit_events",
    _METADATA,
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("ts", sa.Text(), nullable=False),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("vendor", sa.String()),
    sa.Column("invoice_id", sa.String()),
    sa.Column("entity_type", sa.String()),
    sa.Column("entity_id", sa.String()),
    sa.Column("meta", sa.JSON()),
)


@dataclass(frozen=True)
class StoreCapabilities:
    """Optional columns present in the connected database."""

    correction_status: bool = True
    resolution_disabled_at: bool = True


def _column_names(inspector, table: str) -> set[str]:
    if not inspector.has_table(table):
        return set()
    return {column["name"] for column in inspector.get_columns(table)}


def detect_capabilities(engine: Engine) -> StoreCapabilities:
    inspector = sa.inspect(engine)
    return StoreCapabilities(
        correction_status="status" in _column_names(inspector, CORRECTION_MEMORY_TABLE.name),
        resolution_disabled_at="disabled_at" in _column_names(inspector, RESOLUTION_MEMORY_TABLE.name),
    )


def create_schema(engine: Engine) -> None:
    """Create all tables (tests and the demo runner; deployments use Alembic)."""
    _METADATA.create_all(engine)


def create_memory_engine(url: str | None = None, **kwargs) -> Engine:
    """Create an engine; SQLite gets explicit BEGIN so SAVEPOINTs nest correctly."""
    url = sa.engine.make_url(url or settings.database_url)
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = sa.create_engine(url, future=True, **kwargs)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):  # pragma: no cover - driver hook
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _emit_begin(conn):  # pragma: no cover - driver hook
            conn.exec_driver_sql("BEGIN")

    return engine


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    """Create (and cache) the engine for ``settings.database_url``."""
    return create_memory_engine()
