"""
Gateway audit log -- records every tool invocation, whatever its outcome.

Two sinks:
  - `DatabaseAuditSink` appends to the ``gateway_audit_log`` table (created
    automatically on first use) on its own connection, outside the
    statement's transaction, so a rolled-back write is still audited.
  - `LoggingAuditSink` writes the entry to the application log only.

`record()` never raises: a failed audit write is logged and the caller's
result is returned unchanged.
"""
from __future__ import annotations

import datetime
from dataclasses import asdict, dataclass, field

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine

from sql_gateway.core.config import get_settings
from sql_gateway.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    actor_id: str
    tenant_id: str
    operation: str
    outcome: str
    query: str | None = None
    sub_partition_id: str | None = None
    reason: str | None = None
    category: str | None = None
    detail: str | None = None
    row_count: int | None = None
    elapsed_ms: int | None = None
    created_at: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


def audit_table(metadata: MetaData, name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("actor_id", String(128), nullable=False),
        Column("tenant_id", String(128), nullable=False),
        Column("sub_partition_id", String(128)),
        Column("operation", String(20), nullable=False),
        Column("query", Text),
        Column("outcome", String(40), nullable=False),
        Column("reason", String(40)),
        Column("category", String(60)),
        Column("detail", Text),
        Column("row_count", Integer),
        Column("elapsed_ms", Integer),
        Column("created_at", DateTime(timezone=True), nullable=False),
    )


class LoggingAuditSink:
    """Audit sink that only writes to the application log."""

    def __init__(self) -> None:
        self.entries_written = 0

    def record(self, entry: AuditEntry) -> None:
        try:
            logger.info(
                "AUDIT actor=%s tenant=%s sub_partition=%s op=%s outcome=%s reason=%s rows=%s query=%r",
                entry.actor_id, entry.tenant_id, entry.sub_partition_id, entry.operation, entry.outcome,
                entry.reason, entry.row_count, entry.query,
            )
            self.entries_written += 1
        except Exception:
            logger.exception("Audit write failed")


class DatabaseAuditSink:
    """Append-only audit table written through SQLAlchemy Core."""

    def __init__(self, engine: Engine, table_name: str | None = None):
        self._engine = engine
        self._metadata = MetaData()
        self._table = audit_table(self._metadata, table_name or get_settings().audit_table)
        self._ensured = False

    @property
    def table(self) -> Table:
        return self._table

    def ensure_table(self) -> None:
        """Create the audit table if it doesn't exist."""
        self._metadata.create_all(self._engine, tables=[self._table], checkfirst=True)
        self._ensured = True
        logger.info("Audit table '%s' ensured", self._table.name)

    def record(self, entry: AuditEntry) -> None:
        try:
            if not self._ensured:
                self.ensure_table()
            with self._engine.begin() as conn:
                conn.execute(self._table.insert().values(**asdict(entry)))
            logger.debug("Audit logged: op=%s outcome=%s", entry.operation, entry.outcome)
        except Exception:
            logger.exception("Audit write failed -- continuing without audit entry")


def build_audit_sink(engine: Engine | None = None, settings=None) -> DatabaseAuditSink | LoggingAuditSink:
    """Pick the sink configured by ``audit_backend``."""
    settings = settings or get_settings()
    if settings.audit_backend == "database" and engine is not None:
        return DatabaseAuditSink(engine, settings.audit_table)
    return LoggingAuditSink()
