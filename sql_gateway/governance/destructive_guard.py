"""
Destructive-guard checks for the write path.

  - UPDATE / DELETE without a top-level WHERE        -> MissingScopeGuard (no confirmation path)
  - UPDATE / DELETE whose WHERE is only ``1=1`` / TRUE -> MissingScopeGuard
  - any filtered UPDATE / DELETE                      -> needs confirmation
  - INSERT ... SELECT                                 -> needs confirmation

A WHERE that only exists inside a sub-select does not count as a filter on
the statement itself.
"""
from __future__ import annotations

from sql_gateway.core.logging import get_logger
from sql_gateway.governance.classifier import ParsedStatement, StatementKind
from sql_gateway.governance.sql_safety import is_constant_true
from sql_gateway.governance.tokenizer import Token
from sql_gateway.governance.violations import RejectionReason, Violation

logger = get_logger(__name__)


def top_level_where(tokens: tuple[Token, ...] | list[Token]) -> tuple[int | None, int]:
    """Index of the depth-0 WHERE and the end of its region (RETURNING or end of statement)."""
    where = None
    for i, tok in enumerate(tokens):
        if tok.depth == 0 and tok.is_word("WHERE"):
            where = i
            break
    end = len(tokens)
    start = where if where is not None else 0
    for j in range(start, len(tokens)):
        if tokens[j].depth == 0 and tokens[j].is_word("RETURNING"):
            end = j
            break
    return where, end


def _only_constant_true(tokens: tuple[Token, ...], start: int, end: int) -> bool:
    hit, after = is_constant_true(list(tokens[:end]), start)
    if not hit:
        return False
    # trailing closing parens of ``WHERE (1=1)`` are still the same condition
    return all(t.text == ")" for t in tokens[after:end])


def check_destructive_guard(statement: ParsedStatement) -> tuple[list[Violation], bool]:
    """Return ``(violations, needs_confirmation)`` for a classified write."""
    tokens = statement.tokens

    if statement.kind in (StatementKind.UPDATE, StatementKind.DELETE):
        where, end = top_level_where(tokens)
        verb = statement.kind.value
        if where is None:
            violation = Violation(
                RejectionReason.MISSING_SCOPE_GUARD,
                f"{verb} without a WHERE clause would affect every row and is not allowed.",
            )
            logger.warning("Destructive guard: %s", violation)
            return [violation], False
        if where + 1 >= end or _only_constant_true(tokens, where + 1, end):
            violation = Violation(
                RejectionReason.MISSING_SCOPE_GUARD,
                f"{verb} with an always-true WHERE clause is an unfiltered {verb} and is not allowed.",
            )
            logger.warning("Destructive guard: %s", violation)
            return [violation], False
        return [], True

    if statement.kind is StatementKind.INSERT:
        from_select = any(t.depth == 0 and t.is_word("SELECT") for t in tokens)
        return [], from_select

    return [], False
