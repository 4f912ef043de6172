"""
Loads, parses, and caches the gateway policy YAML into strongly-typed objects.

The gateway policy is the single source of truth for:
  - tenant partitioning (tenant column, partitioned tables)
  - security rules      (blocked schemas)
  - permission levels   (which level may call which tool)
  - schema context      (table descriptions, intent → table hints, common tables)
  - semantic views      (view schema, descriptions, name keyword → domain)
"""
from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from sql_gateway.core.config import get_settings
from sql_gateway.governance.rbac import PermissionLevel, parse_permission_levels


# ── Typed domain objects ─────────────────────────────────

@dataclass(frozen=True)
class TenancyRules:
    tenant_column: str = "organization_id"
    partitioned_tables: frozenset[str] = field(default_factory=frozenset)


_DEFAULT_VIEW_DOMAINS: dict[str, tuple[str, ...]] = {
    "finance": ("balance", "profit", "cash"),
    "inventory": ("inventory",),
    "sales": ("order",),
    "crm": ("customer",),
    "analytics": ("kpi", "ratio"),
}


@dataclass(frozen=True)
class ViewRules:
    schema: str | None = None
    descriptions: dict[str, str] = field(default_factory=dict)
    domains: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(_DEFAULT_VIEW_DOMAINS))

    def infer_domain(self, view_name: str) -> str:
        """First domain with a keyword contained in the view name, else ``general``."""
        name = view_name.lower()
        for domain, keywords in self.domains.items():
            if any(k in name for k in keywords):
                return domain
        return "general"


@dataclass(frozen=True)
class GatewayPolicy:
    """Fully parsed gateway policy."""

    version: int = 1
    tenancy: TenancyRules = field(default_factory=TenancyRules)
    blocked_schemas: tuple[str, ...] = ("pg_catalog", "information_schema")
    permissions: dict[str, PermissionLevel] = field(default_factory=dict)
    descriptions: dict[str, str] = field(default_factory=dict)
    intents: dict[str, tuple[str, ...]] = field(default_factory=dict)
    common_tables: tuple[str, ...] = ()
    views: ViewRules = field(default_factory=ViewRules)

    # ── Convenience look-ups ─────────────────────────

    @property
    def tenant_column(self) -> str:
        return self.tenancy.tenant_column

    @property
    def partitioned_tables(self) -> frozenset[str]:
        return self.tenancy.partitioned_tables

    def is_partitioned(self, table: str) -> bool:
        return table.lower() in self.tenancy.partitioned_tables

    def describe(self, table: str) -> str:
        return self.descriptions.get(table) or f"Table containing {table} data"

    def tables_for_intent(self, intent: str | None) -> list[str]:
        """Map free-text intent to tables via keyword hints; common tables otherwise."""
        if not intent:
            return list(self.common_tables)
        text = intent.lower()
        tables: list[str] = []
        for keyword, hinted in self.intents.items():
            if keyword in text:
                for t in hinted:
                    if t not in tables:
                        tables.append(t)
        return tables or list(self.common_tables)


# ── Parsing ──────────────────────────────────────────────

def _parse_tenancy(raw: dict[str, Any] | None) -> TenancyRules:
    if not raw:
        return TenancyRules()
    return TenancyRules(
        tenant_column=str(raw.get("tenant_column", "organization_id")).lower(),
        partitioned_tables=frozenset(t.lower() for t in raw.get("partitioned_tables", [])),
    )


def _parse_views(raw: dict[str, Any] | None) -> ViewRules:
    if not raw:
        return ViewRules()
    domains = raw.get("domains")
    return ViewRules(
        schema=raw.get("schema"),
        descriptions={k.lower(): v for k, v in (raw.get("descriptions") or {}).items()},
        domains=(
            {d.lower(): tuple(k.lower() for k in kws) for d, kws in domains.items()}
            if domains else dict(_DEFAULT_VIEW_DOMAINS)
        ),
    )


def parse_policy(raw_yaml: dict[str, Any] | None) -> GatewayPolicy:
    raw_yaml = raw_yaml or {}
    security = raw_yaml.get("security") or {}
    schema = raw_yaml.get("schema_context") or {}
    blocked = security.get("blocked_schemas", ["pg_catalog", "information_schema"])
    return GatewayPolicy(
        version=raw_yaml.get("version", 1),
        tenancy=_parse_tenancy(raw_yaml.get("tenancy")),
        blocked_schemas=tuple(s.lower() for s in blocked),
        permissions=parse_permission_levels(raw_yaml.get("permissions")),
        descriptions=dict(schema.get("descriptions") or {}),
        intents={k.lower(): tuple(v) for k, v in (schema.get("intents") or {}).items()},
        common_tables=tuple(schema.get("common_tables") or []),
        views=_parse_views(schema.get("views")),
    )


# ── Public API ───────────────────────────────────────────

@lru_cache
def load_policy(path: str | None = None) -> GatewayPolicy:
    """Load and cache the gateway policy from YAML."""
    policy_path = Path(path or get_settings().policy_path)
    with open(policy_path) as f:
        raw = yaml.safe_load(f)
    return parse_policy(raw)
