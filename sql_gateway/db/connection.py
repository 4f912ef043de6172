"""SQLAlchemy engine & tenant-scoped connections.

Single shared engine with connection pooling.  Every gateway statement runs
through `tenant_connection`, which checks out one connection, opens one
transaction and applies the caller's tenant context to it before the
statement is issued.  All settings are transaction-local, so they are gone
by the time the connection returns to the pool.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from sql_gateway.core.config import get_settings
from sql_gateway.core.context import TenantContext
from sql_gateway.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
            echo=False,
        )
        logger.info("DB engine created  host=%s  db=%s", settings.postgres_host, settings.postgres_db)
    return _engine


def supports_session_settings(conn: Connection) -> bool:
    return conn.dialect.name == "postgresql"


def apply_tenant_context(
    conn: Connection,
    context: TenantContext,
    read_only: bool,
    timeout_ms: int,
    prefix: str,
) -> None:
    """Bind the tenant context to the open transaction on *conn*.

    ``SET TRANSACTION READ ONLY`` has to be the first statement of the
    transaction, so it precedes the context settings.
    """
    if not supports_session_settings(conn):
        logger.debug("Dialect %s has no session settings; tenant context not applied", conn.dialect.name)
        return
    if read_only:
        conn.execute(text("SET TRANSACTION READ ONLY"))
    conn.execute(
        text(
            "SELECT "
            f"set_config('{prefix}.user_id', :user_id, true), "
            f"set_config('{prefix}.org_id', :org_id, true), "
            f"set_config('{prefix}.workspace_id', :workspace_id, true), "
            f"set_config('{prefix}.role', :role, true)"
        ),
        {
            "user_id": context.actor_id,
            "org_id": context.tenant_id,
            "workspace_id": context.sub_partition_id or "",
            "role": context.permission_level,
        },
    )
    conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))


@contextmanager
def tenant_connection(
    context: TenantContext,
    engine: Engine | None = None,
    read_only: bool = True,
    timeout_ms: int | None = None,
) -> Generator[Connection, None, None]:
    """Yield a connection inside one transaction carrying *context*.

    Commits when the block completes, rolls back on any exception.  The
    connection is returned to the pool on exit.
    """
    settings = get_settings()
    engine = engine or get_engine()
    timeout = settings.statement_timeout_ms if timeout_ms is None else timeout_ms
    with engine.connect() as conn:
        with conn.begin():
            apply_tenant_context(conn, context, read_only, timeout, settings.tenant_setting_prefix)
            yield conn
