"""
Unit tests -- permission levels per tool operation.
"""
import pytest

from sql_gateway.core.context import OperationKind
from sql_gateway.governance.rbac import PermissionLevel, check_permission, parse_permission_levels
from sql_gateway.governance.violations import RejectionReason


# ── parse_permission_levels ─────────────────────────────

def test_parse_levels_empty():
    assert parse_permission_levels(None) == {}
    assert parse_permission_levels({}) == {}


def test_parse_levels_basic():
    levels = parse_permission_levels({
        "viewer": {"allowed_operations": ["read", "schema_info"]},
        "admin": {"allowed_operations": "*"},
    })
    assert levels["viewer"].allowed_operations == frozenset({"read", "schema_info"})
    assert levels["viewer"].wildcard is False
    assert levels["admin"].wildcard is True


def test_permission_level_allows():
    level = PermissionLevel(name="member", allowed_operations=frozenset({"read", "write"}))
    assert level.allows(OperationKind.WRITE)
    assert not level.allows(OperationKind.SCHEMA_INFO)


# ── check_permission ────────────────────────────────────

@pytest.fixture
def sample_levels() -> dict[str, PermissionLevel]:
    return parse_permission_levels({
        "viewer": {"allowed_operations": ["read", "schema_info"]},
        "member": {"allowed_operations": ["read", "write", "schema_info"]},
        "admin": {"allowed_operations": "*"},
    })


def test_viewer_can_read(sample_levels):
    assert check_permission("viewer", OperationKind.READ, sample_levels) == []


def test_viewer_blocked_from_write(sample_levels):
    violations = check_permission("viewer", OperationKind.WRITE, sample_levels)
    assert len(violations) == 1
    assert violations[0].reason is RejectionReason.PERMISSION_DENIED
    assert "write" in violations[0].message


def test_member_can_write(sample_levels):
    assert check_permission("member", OperationKind.WRITE, sample_levels) == []


def test_admin_wildcard(sample_levels):
    for op in OperationKind:
        assert check_permission("admin", op, sample_levels) == []


def test_unknown_level(sample_levels):
    violations = check_permission("intern", OperationKind.READ, sample_levels)
    assert len(violations) == 1
    assert "Unknown permission level" in violations[0].message


def test_missing_level_denied_when_levels_defined(sample_levels):
    assert check_permission(None, OperationKind.READ, sample_levels)


def test_no_levels_defined():
    """When no levels are defined, every operation is allowed."""
    assert check_permission("anyone", OperationKind.WRITE, {}) == []
