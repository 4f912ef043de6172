"""
Affected-row preview for writes.

The preview is a plain COUNT query built from the original statement's tokens
and tenant-scoped like any other read:

    DELETE FROM t [a] WHERE c          ->  SELECT COUNT(*) AS affected_rows FROM t [a] WHERE c
    UPDATE t [a] SET ... WHERE c       ->  SELECT COUNT(*) AS affected_rows FROM t [a] WHERE c
    INSERT INTO t (...) SELECT s       ->  SELECT COUNT(*) AS affected_rows FROM (s) AS preview_source
    INSERT INTO t (...) VALUES r1, r2  ->  2, counted without a query

Shapes whose affected rows cannot be counted that way (DELETE ... USING,
UPDATE ... FROM, a WITH-sourced INSERT) get ``PreviewUnavailable`` instead of
a guess.
"""
from __future__ import annotations

from dataclasses import dataclass

from sql_gateway.governance.classifier import ParsedStatement, StatementKind, statement_from_text
from sql_gateway.governance.destructive_guard import top_level_where
from sql_gateway.governance.tokenizer import Token, TokenKind, matching_paren
from sql_gateway.governance.violations import RejectionReason, Violation

_COUNT = "SELECT COUNT(*) AS affected_rows FROM "


@dataclass(frozen=True)
class PreviewPlan:
    statement: ParsedStatement | None = None
    static_count: int | None = None


def _unavailable(message: str) -> Violation:
    return Violation(RejectionReason.PREVIEW_UNAVAILABLE, message)


def _index_of(tokens: tuple[Token, ...], word: str, start: int = 0) -> int | None:
    for k in range(start, len(tokens)):
        if tokens[k].depth == 0 and tokens[k].is_word(word):
            return k
    return None


def _preview_delete(statement: ParsedStatement) -> tuple[PreviewPlan | None, Violation | None]:
    tokens, text = statement.tokens, statement.text
    where, end = top_level_where(tokens)
    if _index_of(tokens, "USING") is not None:
        return None, _unavailable("Affected rows of DELETE ... USING cannot be previewed reliably.")
    if where is None:
        return None, _unavailable("DELETE has no WHERE clause to preview.")
    sql = _COUNT + text[tokens[2].start:tokens[end - 1].end]
    return PreviewPlan(statement=statement_from_text(sql, StatementKind.SELECT)), None


def _preview_update(statement: ParsedStatement) -> tuple[PreviewPlan | None, Violation | None]:
    tokens, text = statement.tokens, statement.text
    set_idx = _index_of(tokens, "SET")
    where, end = top_level_where(tokens)
    if set_idx is None or where is None:
        return None, _unavailable("UPDATE has no WHERE clause to preview.")
    from_idx = _index_of(tokens, "FROM", set_idx)
    if from_idx is not None and from_idx < where and not tokens[from_idx - 1].is_word("DISTINCT"):
        return None, _unavailable("Affected rows of UPDATE ... FROM cannot be previewed reliably.")
    target = text[tokens[1].start:tokens[set_idx - 1].end]
    condition = text[tokens[where].start:tokens[end - 1].end]
    sql = f"{_COUNT}{target} {condition}"
    return PreviewPlan(statement=statement_from_text(sql, StatementKind.SELECT)), None


def _preview_insert(statement: ParsedStatement) -> tuple[PreviewPlan | None, Violation | None]:
    tokens, text = statement.tokens, statement.text
    i = 2
    while i < len(tokens) and tokens[i].kind is not TokenKind.LPAREN and not tokens[i].is_word(
        "VALUES", "SELECT", "WITH", "DEFAULT"
    ):
        i += 1
    if i < len(tokens) and tokens[i].kind is TokenKind.LPAREN and not (
        i + 1 < len(tokens) and tokens[i + 1].is_word("SELECT", "WITH")
    ):
        i = matching_paren(tokens, i) + 1  # column list
    if i < len(tokens) and tokens[i].is_word("OVERRIDING"):
        i += 3

    source = tokens[i] if i < len(tokens) else None
    if source is None:
        return None, _unavailable("INSERT has no source rows to preview.")
    if source.is_word("DEFAULT"):
        return PreviewPlan(static_count=1), None
    if source.is_word("VALUES"):
        rows = 0
        j = i + 1
        while j < len(tokens) and tokens[j].kind is TokenKind.LPAREN and tokens[j].depth == 0:
            rows += 1
            j = matching_paren(tokens, j) + 1
            if j < len(tokens) and tokens[j].kind is TokenKind.COMMA:
                j += 1
                continue
            break
        return PreviewPlan(static_count=rows), None
    if source.is_word("SELECT"):
        end = len(tokens)
        for k in range(i + 1, len(tokens)):
            tok = tokens[k]
            if tok.depth == 0 and (
                tok.is_word("RETURNING")
                or (tok.is_word("ON") and k + 1 < len(tokens) and tokens[k + 1].is_word("CONFLICT"))
            ):
                end = k
                break
        sql = f"{_COUNT}({text[source.start:tokens[end - 1].end]}) AS preview_source"
        return PreviewPlan(statement=statement_from_text(sql, StatementKind.SELECT)), None
    return None, _unavailable("Affected rows of this INSERT source cannot be previewed reliably.")


def build_preview(statement: ParsedStatement) -> tuple[PreviewPlan | None, Violation | None]:
    """Return ``(plan, None)`` or ``(None, PreviewUnavailable violation)``."""
    if statement.kind is StatementKind.DELETE:
        return _preview_delete(statement)
    if statement.kind is StatementKind.UPDATE:
        return _preview_update(statement)
    if statement.kind is StatementKind.INSERT:
        return _preview_insert(statement)
    return None, _unavailable("Only writes have an affected-row preview.")
