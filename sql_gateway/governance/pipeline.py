"""
Validation pipeline -- takes raw agent SQL to an accepted, tenant-scoped statement.

Stages (first rejection wins, nothing here touches the database):
  1. Permission level may use the declared operation
  2. Comments stripped (string-literal aware)
  3. Statement boundaries found; a second statement is stacked-statement injection
  4. Forbidden-construct scan
  5. Leading-verb classification against the declared operation
  6. Injection-signature scan (tautology, set operations, timing probes)
  7. Destructive guard (write path): unfiltered UPDATE / DELETE, confirmation flag
  8. Tenant-scope rewrite
"""
from __future__ import annotations

import threading
from dataclasses import dataclass

from sql_gateway.core.context import OperationKind, QueryRequest, TenantContext
from sql_gateway.core.logging import get_logger
from sql_gateway.governance.classifier import ParsedStatement, classify_statement
from sql_gateway.governance.destructive_guard import check_destructive_guard
from sql_gateway.governance.policy_loader import GatewayPolicy, load_policy
from sql_gateway.governance.rbac import check_permission
from sql_gateway.governance.sql_safety import (
    check_forbidden_constructs,
    check_injection_risk,
    check_stacked_statements,
)
from sql_gateway.governance.tenant_scope import RewrittenStatement, TenantScopeError, rewrite_for_tenant
from sql_gateway.governance.tokenizer import SQLTokenizeError, significant, split_statements, strip_comments, tokenize
from sql_gateway.governance.violations import RejectionReason, Violation

logger = get_logger(__name__)


@dataclass(frozen=True)
class ValidationOutcome:
    accepted: bool
    rejection: Violation | None = None
    needs_confirmation: bool = False
    statement: ParsedStatement | None = None
    rewritten: RewrittenStatement | None = None
    cancelled: bool = False

    @classmethod
    def reject(cls, violation: Violation) -> "ValidationOutcome":
        return cls(accepted=False, rejection=violation)


_CANCELLED = ValidationOutcome(accepted=False, cancelled=True)


def scope_statement(
    statement: ParsedStatement,
    context: TenantContext,
    policy: GatewayPolicy,
) -> RewrittenStatement:
    """Tenant-scope an already classified statement (raises TenantScopeError)."""
    return rewrite_for_tenant(
        statement,
        context.tenant_id,
        policy.partitioned_tables,
        tenant_column=policy.tenant_column,
    )


def validate_query(
    request: QueryRequest,
    context: TenantContext,
    policy: GatewayPolicy | None = None,
    cancel_event: threading.Event | None = None,
) -> ValidationOutcome:
    """Run every validation stage over *request* for the caller in *context*."""
    if policy is None:
        policy = load_policy()

    def cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def reject(violation: Violation) -> ValidationOutcome:
        logger.warning(
            "Rejected %s query tenant=%s actor=%s: %s",
            request.operation.value, context.tenant_id, context.actor_id, violation,
        )
        return ValidationOutcome.reject(violation)

    def first(violations: list[Violation]) -> ValidationOutcome | None:
        return reject(violations[0]) if violations else None

    # 1. permission
    rejected = first(check_permission(context.permission_level, request.operation, policy.permissions))
    if rejected:
        return rejected
    if request.operation not in (OperationKind.READ, OperationKind.WRITE):
        return reject(
            Violation(RejectionReason.STRUCTURAL_INVALID, f"'{request.operation.value}' does not accept SQL.")
        )

    # 2-3. comments, statement boundaries
    try:
        stripped = strip_comments(request.query or "")
        tokens = significant(tokenize(stripped))
    except SQLTokenizeError as exc:
        return reject(Violation(RejectionReason.STRUCTURAL_INVALID, str(exc)))
    statements = split_statements(tokens)
    if not statements:
        return reject(Violation(RejectionReason.STRUCTURAL_INVALID, "Empty query."))
    rejected = first(check_stacked_statements(statements))
    if rejected:
        return rejected
    if cancelled():
        return _CANCELLED

    # 4. forbidden constructs
    stmt_tokens = statements[0]
    rejected = first(check_forbidden_constructs(stmt_tokens, request.operation, list(policy.blocked_schemas)))
    if rejected:
        return rejected

    # 5. classification
    text = stripped[stmt_tokens[0].start:stmt_tokens[-1].end]
    statement, violations = classify_statement(text, request.operation)
    rejected = first(violations)
    if rejected:
        return rejected
    assert statement is not None
    if request.explain and not statement.explain:
        statement = ParsedStatement(
            kind=statement.kind, text=statement.text, tokens=statement.tokens, explain=True,
        )
    if cancelled():
        return _CANCELLED

    # 6. injection signatures
    rejected = first(check_injection_risk(list(statement.tokens)))
    if rejected:
        return rejected

    # 7. destructive guard
    needs_confirmation = False
    if request.operation is OperationKind.WRITE:
        violations, needs_confirmation = check_destructive_guard(statement)
        rejected = first(violations)
        if rejected:
            return rejected
    if cancelled():
        return _CANCELLED

    # 8. tenant scope
    try:
        rewritten = scope_statement(statement, context, policy)
    except TenantScopeError as exc:
        return reject(exc.violation)

    logger.info(
        "Accepted %s %s tenant=%s scoped=%s confirm=%s",
        request.operation.value, statement.kind.value, context.tenant_id,
        list(rewritten.tables_scoped), needs_confirmation,
    )
    return ValidationOutcome(
        accepted=True,
        needs_confirmation=needs_confirmation,
        statement=statement,
        rewritten=rewritten,
    )
