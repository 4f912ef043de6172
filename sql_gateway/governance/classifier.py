"""
Statement classifier -- checks the leading verb against the declared operation.

A read-declared call must begin with a retrieval verb (SELECT, or WITH ... SELECT),
optionally behind an ``EXPLAIN [ANALYZE] [VERBOSE]`` prefix.  A write-declared
call must begin with INSERT INTO, UPDATE or DELETE FROM.  Anything else is
``StructuralInvalid``: the cheap gate that stops a read tool smuggling a mutation.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from sql_gateway.core.context import OperationKind
from sql_gateway.governance.tokenizer import Token, TokenKind, matching_paren, significant, tokenize
from sql_gateway.governance.violations import RejectionReason, Violation


class StatementKind(str, Enum):
    SELECT = "SELECT"
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


READ_VERBS = ("SELECT", "WITH")
WRITE_VERBS = ("INSERT", "UPDATE", "DELETE")


@dataclass(frozen=True)
class ParsedStatement:
    """A single classified statement (comment-free, no trailing ``;``)."""
    kind: StatementKind
    text: str
    tokens: tuple[Token, ...]
    explain: bool = False
    analyze: bool = False

    @property
    def is_write(self) -> bool:
        return self.kind is not StatementKind.SELECT


def statement_from_text(text: str, kind: StatementKind) -> ParsedStatement:
    """Build a ParsedStatement for gateway-generated SQL (e.g. preview queries)."""
    return ParsedStatement(kind=kind, text=text, tokens=tuple(significant(tokenize(text))))


def _structural(message: str) -> list[Violation]:
    return [Violation(RejectionReason.STRUCTURAL_INVALID, message)]


def _main_verb_after_with(tokens: list[Token]) -> Token | None:
    """First depth-0 statement verb after a WITH list (CTE bodies sit in parens)."""
    for tok in tokens[1:]:
        if tok.depth == 0 and tok.is_word("SELECT", "INSERT", "UPDATE", "DELETE", "MERGE"):
            return tok
    return None


def classify_statement(
    text: str,
    operation: OperationKind,
) -> tuple[ParsedStatement | None, list[Violation]]:
    """Classify one comment-stripped statement.

    Returns
    -------
    (statement, violations)
        ``statement`` is ``None`` whenever ``violations`` is non-empty.
    """
    tokens = significant(tokenize(text))
    if not tokens:
        return None, _structural("Empty statement.")

    explain = False
    analyze = False
    i = 0
    if tokens[0].is_word("EXPLAIN"):
        if operation is not OperationKind.READ:
            return None, _structural("EXPLAIN is only available through the read tool.")
        explain = True
        i = 1
        while i < len(tokens):
            tok = tokens[i]
            if tok.is_word("ANALYZE", "ANALYSE"):
                analyze = True
                i += 1
            elif tok.is_word("VERBOSE"):
                i += 1
            elif tok.kind is TokenKind.LPAREN:
                close = matching_paren(tokens, i)
                analyze = analyze or any(t.is_word("ANALYZE", "ANALYSE") for t in tokens[i:close])
                i = close + 1
            else:
                break
        if i >= len(tokens):
            return None, _structural("EXPLAIN must be followed by a statement.")
        text = text[tokens[i].start:]
        tokens = significant(tokenize(text))

    verb = tokens[0].upper

    if operation is OperationKind.READ:
        if verb not in READ_VERBS:
            return None, _structural(
                f"Read queries must begin with SELECT or WITH (found '{tokens[0].text}')."
            )
        if verb == "WITH":
            main = _main_verb_after_with(tokens)
            if main is None or not main.is_word("SELECT"):
                return None, _structural("WITH queries on the read path must end in a SELECT.")
        kind = StatementKind.SELECT
    elif operation is OperationKind.WRITE:
        if verb not in WRITE_VERBS:
            return None, _structural(
                f"Write queries must begin with INSERT, UPDATE or DELETE (found '{tokens[0].text}')."
            )
        if len(tokens) < 3:
            return None, _structural(f"Incomplete {verb} statement.")
        if verb == "INSERT" and not tokens[1].is_word("INTO"):
            return None, _structural("INSERT must be of the form INSERT INTO <table> ...")
        if verb == "DELETE" and not tokens[1].is_word("FROM"):
            return None, _structural("DELETE must be of the form DELETE FROM <table> ...")
        if verb == "UPDATE" and not any(t.depth == 0 and t.is_word("SET") for t in tokens):
            return None, _structural("UPDATE must contain a SET clause.")
        kind = StatementKind(verb)
    else:
        return None, _structural(f"Operation '{operation.value}' does not accept SQL text.")

    statement = ParsedStatement(
        kind=kind,
        text=text,
        tokens=tuple(tokens),
        explain=explain,
        analyze=analyze,
    )
    return statement, []
