"""
Driver error sanitiser.

Database errors go back to the agent, so they are reduced to the primary
message line.  Removed or redacted:
  - DETAIL / HINT / CONTEXT / WHERE / QUERY lines from the driver
  - SQLAlchemy's ``[SQL: ...]`` / ``[parameters: ...]`` / background-link trailers
  - ``Key (col)=(value)`` tuples from constraint violations
  - any UUID other than the caller's own ids
"""
from __future__ import annotations

import re

from sqlalchemy.exc import SQLAlchemyError

from sql_gateway.core.context import TenantContext

_DRIVER_DETAIL_RE = re.compile(r"^\s*(DETAIL|HINT|CONTEXT|WHERE|QUERY|LINE \d+)\b.*$", re.MULTILINE)
_TRAILER_RE = re.compile(r"\s*\((?:Background on this error|psycopg2\.|sqlite3\.)[^)]*\)", re.IGNORECASE)
_SQL_BLOCK_RE = re.compile(r"\[(?:SQL|parameters):.*?\](?=\s*(?:\[|\(|$))", re.DOTALL)
_KEY_VALUE_RE = re.compile(r"Key \(([^)]*)\)=\([^)]*\)")
_UUID_RE = re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b")

_FALLBACK = "Database error while executing the statement."


def sanitize_db_error(exc: BaseException, context: TenantContext | None = None) -> str:
    """Return an agent-safe one-line message for *exc*."""
    orig = getattr(exc, "orig", None) if isinstance(exc, SQLAlchemyError) else None
    message = str(orig if orig is not None else exc)

    message = _SQL_BLOCK_RE.sub("", message)
    message = _TRAILER_RE.sub("", message)
    message = _DRIVER_DETAIL_RE.sub("", message)
    message = _KEY_VALUE_RE.sub(r"Key (\1)=(<redacted>)", message)

    own = set()
    if context is not None:
        own = {str(v).lower() for v in (context.tenant_id, context.actor_id, context.sub_partition_id) if v}
    message = _UUID_RE.sub(lambda m: m.group(0) if m.group(0).lower() in own else "<redacted>", message)

    lines = [ln.strip() for ln in message.splitlines() if ln.strip()]
    return lines[0] if lines else _FALLBACK
