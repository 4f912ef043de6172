"""
Permission levels for gateway tools.

Levels are defined in the gateway policy YAML under a top-level
``permissions`` key.  Each level lists the tool operations its holders may
invoke.

Example YAML:
  permissions:
    viewer:
      allowed_operations: [read, schema_info]
    member:
      allowed_operations: [read, write, schema_info]
    admin:
      allowed_operations: "*"       # wildcard, every operation

If no ``permissions`` section exists the gateway operates in *open mode*
(every level may use every tool).  Tenant scoping applies regardless.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sql_gateway.core.context import OperationKind
from sql_gateway.core.logging import get_logger
from sql_gateway.governance.violations import RejectionReason, Violation

logger = get_logger(__name__)


# ── Data classes ────────────────────────────────────────


@dataclass(frozen=True)
class PermissionLevel:
    """A single permission level definition."""
    name: str
    allowed_operations: frozenset[str] = field(default_factory=frozenset)
    wildcard: bool = False

    def allows(self, operation: OperationKind) -> bool:
        return self.wildcard or operation.value in self.allowed_operations


# ── Parsing ─────────────────────────────────────────────


def parse_permission_levels(raw: dict[str, Any] | None) -> dict[str, PermissionLevel]:
    """Parse the ``permissions`` section of the gateway policy YAML."""
    if not raw:
        return {}

    levels: dict[str, PermissionLevel] = {}
    for name, cfg in raw.items():
        ops = (cfg or {}).get("allowed_operations", [])
        wildcard = ops == "*"
        levels[name] = PermissionLevel(
            name=name,
            allowed_operations=frozenset() if wildcard else frozenset(str(o).lower() for o in ops),
            wildcard=wildcard,
        )
    return levels


# ── Enforcement ─────────────────────────────────────────


def check_permission(
    level_name: str | None,
    operation: OperationKind,
    levels: dict[str, PermissionLevel],
) -> list[Violation]:
    """Return a list of permission violations (empty = OK).

    Parameters
    ----------
    level_name:
        The caller's permission level from the tenant context.
    operation:
        The tool operation being invoked.
    levels:
        Parsed permission levels from the gateway policy.
    """
    if not levels:
        return []  # no levels defined → open mode

    level = levels.get(level_name or "")
    if level is None:
        violation = Violation(
            RejectionReason.PERMISSION_DENIED,
            f"Unknown permission level '{level_name}'. Available levels: {', '.join(sorted(levels))}",
        )
    elif not level.allows(operation):
        allowed = ", ".join(sorted(level.allowed_operations)) or "none"
        violation = Violation(
            RejectionReason.PERMISSION_DENIED,
            f"Permission level '{level.name}' may not use '{operation.value}'. Allowed operations: {allowed}",
        )
    else:
        return []

    logger.warning("Permission denied for level=%s op=%s", level_name, operation.value)
    return [violation]
