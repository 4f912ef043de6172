"""
Gateway service -- orchestrates validate -> confirm -> execute -> audit.

`SqlGateway` is the only path from agent SQL to the database.  Every call is
validated from scratch, tenant-scoped, gated for confirmation when it is
irreversible, executed inside a tenant-bound transaction and recorded in the
audit sink, whatever the outcome.

  read(query, explain)            SELECT / WITH ... SELECT / EXPLAIN
  write(query, preview, confirm)  INSERT / UPDATE / DELETE
  schema_info(tables, intent)     table descriptors for the agent's context
  list_views(domain)              semantic reporting views with descriptions
"""
from __future__ import annotations

import threading

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from sql_gateway.core.config import Settings, get_settings
from sql_gateway.core.context import OperationKind, QueryRequest, TenantContext, require_context
from sql_gateway.core.logging import get_logger
from sql_gateway.core.utils import timer
from sql_gateway.db.audit_log import AuditEntry, build_audit_sink
from sql_gateway.db.connection import get_engine, tenant_connection
from sql_gateway.db.errors import sanitize_db_error
from sql_gateway.db.executor import ExecutionResult, count_rows, run_statement
from sql_gateway.db.schema_introspector import SchemaIntrospector
from sql_gateway.gateway.cache import SchemaCache
from sql_gateway.gateway.confirmation import ConfirmationGate, GateState, GateTicket
from sql_gateway.gateway.outcomes import (
    CancelledResult,
    ConfirmationRequiredResult,
    ExecutedResult,
    ExecutionErrorResult,
    ExplainedResult,
    PreviewedResult,
    RejectedResult,
    SchemaInfoResult,
    ToolResult,
    ViewsListResult,
)
from sql_gateway.gateway.preview import build_preview
from sql_gateway.governance.pipeline import ValidationOutcome, scope_statement, validate_query
from sql_gateway.governance.policy_loader import GatewayPolicy, load_policy
from sql_gateway.governance.rbac import check_permission
from sql_gateway.governance.tenant_scope import TenantScopeError
from sql_gateway.governance.violations import Violation

logger = get_logger(__name__)


class SqlGateway:
    """Tenant-scoped SQL gateway shared by every agent session.

    Parameters
    ----------
    engine : Engine, optional
        Defaults to the shared engine from `get_engine()`.
    policy : GatewayPolicy, optional
        Defaults to the policy file named by ``policy_path``.
    audit_sink : optional
        Anything with ``record(AuditEntry)``; defaults per ``audit_backend``.
    """

    def __init__(
        self,
        engine: Engine | None = None,
        policy: GatewayPolicy | None = None,
        settings: Settings | None = None,
        audit_sink=None,
        gate: ConfirmationGate | None = None,
        introspector: SchemaIntrospector | None = None,
    ):
        self.settings = settings or get_settings()
        self.engine = engine or get_engine()
        self.policy = policy or load_policy(self.settings.policy_path)
        self.audit = audit_sink or build_audit_sink(self.engine, self.settings)
        self.gate = gate or ConfirmationGate(ttl=self.settings.confirmation_ttl_seconds)
        self.introspector = introspector or SchemaIntrospector(
            self.engine,
            self.policy,
            SchemaCache(
                ttl=self.settings.schema_cache_ttl_seconds,
                max_size=self.settings.schema_cache_max_size,
            ),
        )

    # ── Tool operations ─────────────────────────────────

    def read(
        self,
        context: TenantContext | None,
        query: str,
        explain: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> ToolResult:
        context = require_context(context)
        request = QueryRequest(query=query, operation=OperationKind.READ, explain=explain)
        logger.info("Gateway.read | tenant=%s | actor=%s | explain=%s", context.tenant_id, context.actor_id, explain)

        outcome = validate_query(request, context, self.policy, cancel_event)
        early = self._early_result(outcome)
        if early is not None:
            return self._audited(context, request, early)

        statement, rewritten = outcome.statement, outcome.rewritten
        assert statement is not None and rewritten is not None
        try:
            with tenant_connection(context, self.engine, read_only=True,
                                   timeout_ms=self.settings.statement_timeout_ms) as conn:
                result = run_statement(
                    conn, rewritten, self.settings.sql_row_limit,
                    explain=statement.explain, analyze=statement.analyze,
                    cancel_event=cancel_event,
                )
        except SQLAlchemyError as exc:
            return self._audited(context, request, self._execution_failure(context, exc, cancel_event))

        if statement.explain:
            plan = [str(next(iter(row.values()), "")) for row in result.rows]
            return self._audited(context, request, ExplainedResult(plan=plan, elapsed_ms=result.elapsed_ms))
        return self._audited(context, request, self._executed(result))

    def write(
        self,
        context: TenantContext | None,
        query: str,
        preview: bool = False,
        confirm: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> ToolResult:
        context = require_context(context)
        request = QueryRequest(query=query, operation=OperationKind.WRITE, preview=preview, confirm=confirm)
        logger.info("Gateway.write | tenant=%s | actor=%s | preview=%s | confirm=%s",
                    context.tenant_id, context.actor_id, preview, confirm)

        outcome = validate_query(request, context, self.policy, cancel_event)
        early = self._early_result(outcome)
        if early is not None:
            return self._audited(context, request, early)

        rewritten = outcome.rewritten
        assert rewritten is not None
        ticket = self.gate.open(context, rewritten.sql)

        if outcome.needs_confirmation and confirm and not preview:
            claimed = self.gate.claim(context, rewritten.sql)
            if claimed is not None:
                logger.info("Confirmation claimed key=%s", claimed.key[:12])
                return self._audited(context, request, self._execute_write(context, outcome, claimed, cancel_event))
            logger.info("confirm=true without a live preview; treating as first submission")

        if outcome.needs_confirmation or preview:
            return self._audited(context, request, self._preview(context, outcome, ticket, preview, cancel_event))

        return self._audited(context, request, self._execute_write(context, outcome, ticket, cancel_event))

    def schema_info(
        self,
        context: TenantContext | None,
        tables: list[str] | None = None,
        intent: str | None = None,
        include_relationships: bool = True,
    ) -> SchemaInfoResult:
        context = require_context(context)
        request = QueryRequest(query="", operation=OperationKind.SCHEMA_INFO)
        denied = check_permission(context.permission_level, OperationKind.SCHEMA_INFO, self.policy.permissions)
        if denied:
            result = SchemaInfoResult(success=False, error=denied[0].message)
            self._record(context, request, "rejected", reason=denied[0].reason.value, detail=denied[0].message)
            return result
        try:
            with timer() as t:
                schema = self.introspector.schema_info(tables, intent, include_relationships)
        except SQLAlchemyError as exc:
            logger.exception("Schema introspection failed")
            error = sanitize_db_error(exc, context)
            self._record(context, request, "execution_error", detail=error)
            return SchemaInfoResult(success=False, error=error)
        self._record(context, request, "executed", row_count=len(schema), elapsed_ms=t["elapsed_ms"])
        return SchemaInfoResult(success=True, tables=schema)

    def list_views(self, context: TenantContext | None, domain: str | None = None) -> ViewsListResult:
        context = require_context(context)
        request = QueryRequest(query="", operation=OperationKind.LIST_VIEWS)
        # catalog lookup, governed like schema_info
        denied = check_permission(context.permission_level, OperationKind.SCHEMA_INFO, self.policy.permissions)
        if denied:
            self._record(context, request, "rejected", reason=denied[0].reason.value, detail=denied[0].message)
            return ViewsListResult(success=False, error=denied[0].message)
        try:
            with timer() as t:
                views = self.introspector.list_views(domain)
        except SQLAlchemyError as exc:
            logger.exception("View listing failed")
            error = sanitize_db_error(exc, context)
            self._record(context, request, "execution_error", detail=error)
            return ViewsListResult(success=False, error=error)
        self._record(context, request, "executed", row_count=len(views), elapsed_ms=t["elapsed_ms"])
        return ViewsListResult(success=True, views=views)

    # ── Write path ──────────────────────────────────────

    def _preview(
        self,
        context: TenantContext,
        outcome: ValidationOutcome,
        ticket: GateTicket,
        preview_requested: bool,
        cancel_event: threading.Event | None,
    ) -> ToolResult:
        statement = outcome.statement
        assert statement is not None
        plan, violation = build_preview(statement)
        if violation is not None or plan is None:
            ticket.advance(GateState.REJECTED)
            assert violation is not None
            return self._rejected(violation)

        if plan.static_count is not None:
            affected = plan.static_count
            elapsed = 0
        else:
            assert plan.statement is not None
            try:
                scoped = scope_statement(plan.statement, context, self.policy)
            except TenantScopeError as exc:
                ticket.advance(GateState.REJECTED)
                return self._rejected(exc.violation)
            if cancel_event is not None and cancel_event.is_set():
                return CancelledResult()
            try:
                with timer() as t, tenant_connection(context, self.engine, read_only=True,
                                                     timeout_ms=self.settings.statement_timeout_ms) as conn:
                    affected = count_rows(conn, scoped)
            except SQLAlchemyError as exc:
                return self._execution_failure(context, exc, cancel_event)
            elapsed = t["elapsed_ms"]

        if outcome.needs_confirmation:
            self.gate.offer(ticket, affected)
        if preview_requested:
            return PreviewedResult(affected_rows=affected, elapsed_ms=elapsed)
        return ConfirmationRequiredResult(
            preview=(
                f"This {statement.kind.value} would affect {affected} row(s). "
                "Resubmit the same statement with confirm=true to run it."
            ),
            affected_rows=affected,
            sql=ticket.sql,
        )

    def _execute_write(
        self,
        context: TenantContext,
        outcome: ValidationOutcome,
        ticket: GateTicket,
        cancel_event: threading.Event | None,
    ) -> ToolResult:
        if cancel_event is not None and cancel_event.is_set():
            return CancelledResult()
        rewritten = outcome.rewritten
        assert rewritten is not None
        try:
            with tenant_connection(context, self.engine, read_only=False,
                                   timeout_ms=self.settings.statement_timeout_ms) as conn:
                result = run_statement(
                    conn, rewritten, self.settings.sql_row_limit,
                    is_write=True, cancel_event=cancel_event,
                )
        except SQLAlchemyError as exc:
            return self._execution_failure(context, exc, cancel_event)
        ticket.advance(GateState.EXECUTED)
        return self._executed(result)

    # ── Helpers ─────────────────────────────────────────

    def _early_result(self, outcome: ValidationOutcome) -> ToolResult | None:
        if outcome.cancelled:
            return CancelledResult()
        if not outcome.accepted:
            assert outcome.rejection is not None
            return self._rejected(outcome.rejection)
        return None

    @staticmethod
    def _rejected(violation: Violation) -> RejectedResult:
        return RejectedResult(reason=violation.reason, category=violation.category, error=violation.message)

    @staticmethod
    def _executed(result: ExecutionResult) -> ExecutedResult:
        return ExecutedResult(
            data=result.rows,
            columns=result.columns,
            row_count=result.row_count,
            rows_affected=result.rows_affected,
            elapsed_ms=result.elapsed_ms,
            truncated=result.truncated,
        )

    @staticmethod
    def _execution_failure(
        context: TenantContext,
        exc: SQLAlchemyError,
        cancel_event: threading.Event | None,
    ) -> ToolResult:
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Statement cancelled: %s", type(exc).__name__)
            return CancelledResult()
        logger.exception("SQL execution failed")
        return ExecutionErrorResult(error=sanitize_db_error(exc, context))

    def _audited(self, context: TenantContext, request: QueryRequest, result: ToolResult) -> ToolResult:
        reason = getattr(result, "reason", None)
        self._record(
            context,
            request,
            result.outcome,
            reason=reason.value if reason is not None else None,
            category=getattr(result, "category", None),
            detail=getattr(result, "error", None),
            row_count=self._row_count(result),
            elapsed_ms=getattr(result, "elapsed_ms", None),
        )
        return result

    @staticmethod
    def _row_count(result: ToolResult) -> int | None:
        for attr in ("rows_affected", "affected_rows", "row_count"):
            value = getattr(result, attr, None)
            if value is not None:
                return value
        return None

    def _record(self, context: TenantContext, request: QueryRequest, outcome: str, **fields) -> None:
        self.audit.record(
            AuditEntry(
                actor_id=context.actor_id,
                tenant_id=context.tenant_id,
                sub_partition_id=context.sub_partition_id,
                operation=request.operation.value,
                query=request.query or None,
                outcome=outcome,
                **fields,
            )
        )
