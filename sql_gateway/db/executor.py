"""
Statement executor.

Every accepted statement runs through `run_statement`, which:
  1. Wraps the rewritten SQL in text() with ``:tenant_id`` bound
  2. Prepends EXPLAIN / EXPLAIN ANALYZE when a plan is requested
  3. Converts Decimal/date/datetime/UUID/bytes to JSON-safe Python types
  4. Caps returned rows at the configured limit and flags truncation
  5. Reports rowcount for writes

The caller owns the connection and its transaction (see `tenant_connection`).
"""
from __future__ import annotations

import datetime
import decimal
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator

from sqlalchemy import text
from sqlalchemy.engine import Connection

from sql_gateway.core.logging import get_logger
from sql_gateway.core.utils import timer
from sql_gateway.governance.tenant_scope import RewrittenStatement

logger = get_logger(__name__)


@dataclass
class ExecutionResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    row_count: int = 0
    rows_affected: int | None = None
    elapsed_ms: int = 0
    truncated: bool = False


def _serialise_value(val: Any) -> Any:
    """Convert DB types to JSON-serialisable Python types."""
    if isinstance(val, decimal.Decimal):
        return float(val)
    if isinstance(val, (datetime.date, datetime.datetime, datetime.time)):
        return val.isoformat()
    if isinstance(val, datetime.timedelta):
        return str(val)
    if isinstance(val, uuid.UUID):
        return str(val)
    if isinstance(val, (bytes, bytearray, memoryview)):
        return bytes(val).hex()
    return val


@contextmanager
def cancel_watch(conn: Connection, cancel_event: threading.Event | None) -> Generator[None, None, None]:
    """Ask the driver to cancel the running statement once *cancel_event* is set.

    Best effort: only drivers exposing ``cancel()`` on the DBAPI connection
    (psycopg2) can interrupt a statement mid-flight.
    """
    if cancel_event is None:
        yield
        return
    dbapi_conn = conn.connection.dbapi_connection
    cancel = getattr(dbapi_conn, "cancel", None)
    done = threading.Event()

    def _watch() -> None:
        while not done.is_set():
            if cancel_event.wait(0.05):
                if not done.is_set() and cancel is not None:
                    logger.info("Cancelling running statement")
                    cancel()
                return

    watcher = threading.Thread(target=_watch, name="sql-gateway-cancel", daemon=True)
    watcher.start()
    try:
        yield
    finally:
        done.set()
        watcher.join(timeout=1)


def run_statement(
    conn: Connection,
    statement: RewrittenStatement,
    row_limit: int,
    is_write: bool = False,
    explain: bool = False,
    analyze: bool = False,
    cancel_event: threading.Event | None = None,
) -> ExecutionResult:
    """Execute *statement* on *conn* and return serialisable rows.

    Raises
    ------
    sqlalchemy.exc.SQLAlchemyError
        If the database rejects or fails the statement.
    """
    sql = statement.sql
    if explain:
        sql = ("EXPLAIN ANALYZE " if analyze else "EXPLAIN ") + sql
    logger.info("Executing SQL (%d chars) write=%s explain=%s", len(sql), is_write, explain)

    with timer() as t, cancel_watch(conn, cancel_event):
        result = conn.execute(text(sql), statement.params)
        out = ExecutionResult()
        if result.returns_rows:
            out.columns = list(result.keys())
            fetched = result.fetchmany(row_limit + 1)
            out.truncated = len(fetched) > row_limit
            out.rows = [
                {col: _serialise_value(val) for col, val in zip(out.columns, row)}
                for row in fetched[:row_limit]
            ]
            out.row_count = len(out.rows)
        if is_write:
            out.rows_affected = result.rowcount
        result.close()
    out.elapsed_ms = t["elapsed_ms"]

    logger.info("Returned %d rows (affected=%s, truncated=%s)", out.row_count, out.rows_affected, out.truncated)
    return out


def count_rows(conn: Connection, statement: RewrittenStatement) -> int:
    """Run a ``SELECT COUNT(*) AS affected_rows ...`` preview and return the count."""
    value = conn.execute(text(statement.sql), statement.params).scalar()
    return int(value or 0)
