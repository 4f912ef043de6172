"""
Tenant context -- the caller's security scope for one request.

Supplied by the external auth layer.  Immutable; every gateway operation
requires one before it will look at query text.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class OperationKind(str, Enum):
    """Declared operation of a tool invocation."""
    READ = "read"
    WRITE = "write"
    SCHEMA_INFO = "schema_info"
    LIST_VIEWS = "list_views"


class TenantContextMissing(RuntimeError):
    """Raised when a gateway operation is invoked without a tenant context."""


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    actor_id: str
    sub_partition_id: str | None = None
    permission_level: str = "member"

    def __post_init__(self) -> None:
        if not str(self.tenant_id or "").strip():
            raise ValueError("tenant_id is required")
        if not str(self.actor_id or "").strip():
            raise ValueError("actor_id is required")


@dataclass(frozen=True)
class QueryRequest:
    """One candidate statement as submitted by the agent."""
    query: str
    operation: OperationKind
    explain: bool = False
    preview: bool = False
    confirm: bool = False


def require_context(context: TenantContext | None) -> TenantContext:
    if context is None:
        raise TenantContextMissing(
            "Tenant context must be established before any tool invocation."
        )
    return context
