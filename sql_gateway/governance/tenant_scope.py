"""
Tenant-scope rewriter.

Confines a classified statement to the caller's tenant partition by adding
``<ref>.<tenant_column> = :tenant_id`` for every reference to a
tenant-partitioned table.  The tenant id is never spliced into the SQL text;
it is always bound as the ``:tenant_id`` parameter.

Placement rules:
  - SELECT scopes (top level, CTE bodies, derived tables, sub-queries):
    FROM-list tables are scoped in the scope's WHERE.  An existing WHERE
    becomes ``WHERE <pred> AND (<original>)`` so an ``OR`` in the original
    cannot widen the scope; a missing WHERE is synthesised before
    GROUP BY / HAVING / WINDOW / ORDER BY / LIMIT / OFFSET / FETCH / FOR.
  - ``[INNER | LEFT] JOIN ... ON``: the joined table is scoped inside its ON
    condition, which keeps outer-join semantics.  RIGHT / FULL joins scope
    the preserved side in the WHERE.
  - UPDATE / DELETE: the target (and UPDATE ... FROM / DELETE ... USING
    tables) in the statement's WHERE.
  - INSERT: the tenant column and ``:tenant_id`` are appended to the column
    list and to every VALUES row (or to the projection of INSERT ... SELECT).
  - ON CONFLICT ... DO UPDATE: the conflicting row must belong to the tenant.

Refused outright:
  - a CTE named after a partitioned table (names are not resolved lexically)
  - ``TABLE <partitioned>`` row sources, which have no WHERE to scope

Rewriting is idempotent: a clause that already holds the tenant predicate
as a top-level conjunct (bound to ``:tenant_id`` or to a literal equal to the
caller's tenant) is left alone.  A tenant-column comparison against any other
value does not count.

Rendering escapes every ``:name`` in the original text that SQLAlchemy's
``text()`` would treat as a bind marker, so ``:tenant_id`` is the only live
parameter of the rewritten statement.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from sql_gateway.core.logging import get_logger
from sql_gateway.governance.classifier import ParsedStatement, StatementKind
from sql_gateway.governance.sql_safety import CROSS_TENANT_WRITE, UNSCOPED_ROW_SOURCE
from sql_gateway.governance.tokenizer import Token, TokenKind, dotted_name, matching_paren
from sql_gateway.governance.violations import RejectionReason, Violation

logger = get_logger(__name__)

TENANT_PARAM = "tenant_id"
_TENANT_MARKER = f":{TENANT_PARAM}"

# same pattern SQLAlchemy's TextClause uses to find bind markers
_BIND_RE = re.compile(r"(?<![:\w\\]):(\w+)(?!:)")

_JOIN_WORDS = {"JOIN", "INNER", "LEFT", "RIGHT", "FULL", "OUTER", "CROSS", "NATURAL"}
_AFTER_WHERE = {"GROUP", "HAVING", "WINDOW", "ORDER", "LIMIT", "OFFSET", "FETCH", "FOR"}
_SET_OPERATORS = {"UNION", "INTERSECT", "EXCEPT"}
_NOT_ALIASES = (
    _JOIN_WORDS
    | _AFTER_WHERE
    | _SET_OPERATORS
    | {
        "ON", "USING", "WHERE", "SET", "RETURNING", "VALUES", "SELECT", "FROM",
        "LATERAL", "TABLESAMPLE", "AS", "DEFAULT", "DO", "WITH", "ONLY", "OVERRIDING",
    }
)


class TenantScopeError(Exception):
    """Statement cannot be confined to a single tenant."""

    def __init__(self, reason: RejectionReason, message: str, category: str | None = None):
        super().__init__(message)
        self.violation = Violation(reason, message, category=category)


@dataclass(frozen=True)
class RewrittenStatement:
    """SQL ready for ``sqlalchemy.text()`` plus its bound parameters."""
    sql: str
    params: dict[str, Any]
    tables_scoped: tuple[str, ...] = ()
    predicates_added: int = 0


@dataclass
class _TableRef:
    table: str            # normalised name (``public.invoices``)
    ref: str              # qualifier used in the predicate (alias, or name as written)
    on_span: tuple[int, int] | None = None   # token range of the ON condition


@dataclass
class _Insertion:
    pos: int
    order: int
    text: str


@dataclass
class _Rewriter:
    statement: ParsedStatement
    tenant_id: str
    tenant_column: str
    partitioned: frozenset[str]
    tokens: list[Token] = field(init=False)
    insertions: list[_Insertion] = field(default_factory=list)
    scoped: list[str] = field(default_factory=list)
    added: int = 0

    def __post_init__(self) -> None:
        self.tokens = list(self.statement.tokens)
        self._check_cte_names()
        self._check_table_sources()

    # ── Helpers ──────────────────────────────────────────

    def _insert(self, pos: int, text: str) -> None:
        self.insertions.append(_Insertion(pos, len(self.insertions), text))

    def _is_partitioned(self, parts: list[str]) -> bool:
        return ".".join(parts) in self.partitioned or parts[-1] in self.partitioned

    def _predicate(self, ref: str) -> str:
        return f"{ref}.{self.tenant_column} = {_TENANT_MARKER}"

    def _value_ok(self, tok: Token) -> bool:
        if tok.kind is TokenKind.PARAM:
            return tok.text == _TENANT_MARKER
        value = tok.literal_value
        return value is not None and value == str(self.tenant_id)

    def _next_at(self, start: int, end: int, depth: int, test) -> int | None:
        for k in range(start, end):
            tok = self.tokens[k]
            if tok.depth == depth and test(k, tok):
                return k
        return None

    def _is_clause_word(self, k: int, words: set[str]) -> bool:
        tok = self.tokens[k]
        if tok.upper not in words:
            return False
        if tok.upper in ("GROUP", "ORDER"):
            return k + 1 < len(self.tokens) and self.tokens[k + 1].is_word("BY")
        return True

    def _check_cte_names(self) -> None:
        """A CTE may not take the name of a partitioned table.

        The walker resolves table names without lexical CTE scoping, so a
        shadowing CTE would leave real references to the table unscoped.
        """
        toks = self.tokens
        for i, tok in enumerate(toks):
            if not tok.is_word("WITH"):
                continue
            j = i + 1
            if j < len(toks) and toks[j].is_word("RECURSIVE"):
                j += 1
            while j < len(toks) and toks[j].is_identifier:
                name = toks[j].name
                j += 1
                if j < len(toks) and toks[j].kind is TokenKind.LPAREN:
                    j = matching_paren(toks, j) + 1
                if j >= len(toks) or not toks[j].is_word("AS"):
                    break
                j += 1
                while j < len(toks) and toks[j].is_word("NOT", "MATERIALIZED"):
                    j += 1
                if j >= len(toks) or toks[j].kind is not TokenKind.LPAREN:
                    break
                if self._is_partitioned([name]):
                    raise TenantScopeError(
                        RejectionReason.STRUCTURAL_INVALID,
                        f"CTE name '{name}' shadows a tenant-partitioned table; rename the CTE.",
                    )
                j = matching_paren(toks, j) + 1
                if j < len(toks) and toks[j].kind is TokenKind.COMMA:
                    j += 1
                    continue
                break

    def _check_table_sources(self) -> None:
        """``TABLE name`` is a row source with no WHERE to scope."""
        toks = self.tokens
        for i, tok in enumerate(toks):
            if not tok.is_word("TABLE") or (i > 0 and toks[i - 1].kind is TokenKind.DOT):
                continue
            j = i + 1
            if j < len(toks) and toks[j].is_word("ONLY"):
                j += 1
            parts, _ = dotted_name(toks, j)
            if parts and self._is_partitioned(parts):
                raise TenantScopeError(
                    RejectionReason.FORBIDDEN_OPERATION,
                    f"'TABLE {'.'.join(parts)}' reads a tenant-partitioned table without a filter; "
                    "use SELECT ... FROM instead.",
                    category=UNSCOPED_ROW_SOURCE,
                )

    # ── Idempotence ──────────────────────────────────────

    def _already_scoped(self, ref: str, start: int, end: int) -> bool:
        """Does tokens[start:end] hold ``ref.col = <tenant>`` as a top-level conjunct?"""
        if start >= end:
            return False
        depth = self.tokens[start].depth
        region = self.tokens[start:end]
        if any(t.depth == depth and t.is_word("OR") for t in region):
            return False
        ref_parts = [p.strip('"`').lower() for p in ref.split(".")]

        def column_matches(parts: list[str]) -> bool:
            if not parts or parts[-1] != self.tenant_column:
                return False
            return len(parts) == 1 or parts[:-1] == ref_parts

        def conjunct_edge(k: int) -> bool:
            return k < start or k >= end or self.tokens[k].is_word("AND")

        for k in range(start, end):
            tok = self.tokens[k]
            if tok.depth != depth or not (tok.kind is TokenKind.OPERATOR and tok.text == "="):
                continue
            left_parts, left_start = self._dotted_ending_at(k - 1, start)
            if (
                column_matches(left_parts)
                and conjunct_edge(left_start - 1)
                and k + 1 < end
                and self._value_ok(self.tokens[k + 1])
                and conjunct_edge(k + 2)
            ):
                return True
            right_parts, right_end = dotted_name(self.tokens[:end], k + 1)
            if (
                column_matches(right_parts)
                and conjunct_edge(right_end)
                and k - 1 >= start
                and self._value_ok(self.tokens[k - 1])
                and conjunct_edge(k - 2)
            ):
                return True
        return False

    def _dotted_ending_at(self, k: int, floor: int) -> tuple[list[str], int]:
        """Read a dotted identifier backwards from index *k*."""
        parts: list[str] = []
        while k >= floor and self.tokens[k].is_identifier:
            parts.insert(0, self.tokens[k].name)
            if (
                k - 2 >= floor
                and self.tokens[k - 1].kind is TokenKind.DOT
                and self.tokens[k - 2].is_identifier
            ):
                k -= 2
                continue
            break
        return parts, k

    # ── Clause placement ─────────────────────────────────

    def _scope_in_where(
        self,
        refs: list[_TableRef],
        where: int | None,
        region_end: int,
        synth_before: int | None,
        scope_end: int,
    ) -> None:
        if not refs:
            return
        if where is not None:
            if where + 1 >= region_end:
                raise TenantScopeError(RejectionReason.STRUCTURAL_INVALID, "Empty WHERE clause.")
            pending = [r for r in refs if not self._already_scoped(r.ref, where + 1, region_end)]
            self._record(refs, pending)
            if pending:
                preds = " AND ".join(self._predicate(r.ref) for r in pending)
                self._insert(self.tokens[where + 1].start, f"{preds} AND (")
                self._insert(self.tokens[region_end - 1].end, ")")
            return
        self._record(refs, refs)
        preds = " AND ".join(self._predicate(r.ref) for r in refs)
        if synth_before is not None:
            self._insert(self.tokens[synth_before].start, f"WHERE {preds} ")
        else:
            self._insert(self.tokens[scope_end - 1].end, f" WHERE {preds}")

    def _scope_in_on(self, ref: _TableRef) -> None:
        start, end = ref.on_span  # type: ignore[misc]
        if start >= end:
            raise TenantScopeError(RejectionReason.STRUCTURAL_INVALID, "Empty JOIN ... ON condition.")
        if self._already_scoped(ref.ref, start, end):
            self._record([ref], [])
            return
        self._record([ref], [ref])
        self._insert(self.tokens[start].start, f"{self._predicate(ref.ref)} AND (")
        self._insert(self.tokens[end - 1].end, ")")

    def _record(self, refs: list[_TableRef], pending: list[_TableRef]) -> None:
        for r in refs:
            if r.table not in self.scoped:
                self.scoped.append(r.table)
        self.added += len(pending)

    def _place(self, refs: list[_TableRef], where: int | None, region_end: int,
               synth_before: int | None, scope_end: int) -> None:
        in_where = [r for r in refs if r.on_span is None]
        for r in refs:
            if r.on_span is not None:
                self._scope_in_on(r)
        self._scope_in_where(in_where, where, region_end, synth_before, scope_end)

    # ── FROM lists ───────────────────────────────────────

    def _boundary(self, k: int, depth: int) -> bool:
        tok = self.tokens[k]
        if tok.depth != depth:
            return False
        if tok.kind is TokenKind.COMMA or tok.is_word("ON", "USING"):
            return True
        if tok.upper in _JOIN_WORDS:
            nxt = self.tokens[k + 1] if k + 1 < len(self.tokens) else None
            return nxt is None or nxt.kind is not TokenKind.LPAREN  # LEFT(x, 2) is a function
        return False

    def _parse_from_list(self, start: int, end: int, depth: int) -> list[_TableRef]:
        toks = self.tokens
        refs: list[_TableRef] = []
        join_kind: str | None = None
        i = start
        while i < end:
            while i < end and toks[i].is_word("ONLY", "LATERAL"):
                i += 1
            if i >= end:
                break
            ref: _TableRef | None = None
            tok = toks[i]
            if tok.kind is TokenKind.LPAREN:
                close = matching_paren(toks, i)
                inner = toks[i + 1] if i + 1 < close else None
                if inner is None or not inner.is_word("SELECT", "WITH", "VALUES"):
                    raise TenantScopeError(
                        RejectionReason.STRUCTURAL_INVALID,
                        "Parenthesised join groups cannot be tenant-scoped; list the tables directly.",
                    )
                i = close + 1
            elif tok.is_identifier and tok.upper not in _NOT_ALIASES:
                parts, j = dotted_name(toks, i)
                if j < end and toks[j].kind is TokenKind.LPAREN:
                    i = matching_paren(toks, j) + 1  # set-returning function
                else:
                    written = self.statement.text[tok.start:toks[j - 1].end]
                    ref = _TableRef(table=".".join(parts), ref=written) if self._is_partitioned(parts) else None
                    i = j

            # alias, with or without AS, and an optional column-alias list
            alias: Token | None = None
            if i < end and toks[i].is_word("AS") and i + 1 < end:
                alias = toks[i + 1]
                i += 2
            elif i < end and toks[i].is_identifier and toks[i].upper not in _NOT_ALIASES:
                alias = toks[i]
                i += 1
            if alias is not None and i < end and toks[i].kind is TokenKind.LPAREN:
                i = matching_paren(toks, i) + 1
            if ref is not None and alias is not None:
                ref.ref = alias.text

            while i < end and not self._boundary(i, depth):
                i += 1

            if i < end and toks[i].is_word("ON"):
                j = i + 1
                while j < end and not (
                    self._boundary(j, depth) and not toks[j].is_word("ON", "USING")
                ):
                    j += 1
                if ref is not None and join_kind in ("inner", "left"):
                    ref.on_span = (i + 1, j)
                i = j
            elif i < end and toks[i].is_word("USING"):
                i += 1
                if i < end and toks[i].kind is TokenKind.LPAREN:
                    i = matching_paren(toks, i) + 1
                while i < end and not self._boundary(i, depth):
                    i += 1

            if ref is not None:
                refs.append(ref)

            if i < end and toks[i].kind is TokenKind.COMMA:
                join_kind = None
                i += 1
            elif i < end and toks[i].upper in _JOIN_WORDS:
                words = set()
                while i < end and toks[i].upper in _JOIN_WORDS:
                    words.add(toks[i].upper)
                    i += 1
                if "NATURAL" in words or "CROSS" in words:
                    join_kind = "cross"
                elif "RIGHT" in words:
                    join_kind = "right"
                elif "FULL" in words:
                    join_kind = "full"
                elif "LEFT" in words:
                    join_kind = "left"
                else:
                    join_kind = "inner"
            elif i < end:
                i += 1
        return refs

    # ── SELECT scopes ────────────────────────────────────

    def _scope_end(self, select: int) -> int:
        toks = self.tokens
        depth = toks[select].depth
        for k in range(select + 1, len(toks)):
            tok = toks[k]
            if tok.depth < depth:
                return k
            if tok.depth == depth and (
                tok.upper in _SET_OPERATORS
                or tok.is_word("RETURNING")
                or (tok.is_word("ON") and k + 1 < len(toks) and toks[k + 1].is_word("CONFLICT"))
            ):
                return k
        return len(toks)

    def _rewrite_select_scope(self, select: int) -> None:
        toks = self.tokens
        depth = toks[select].depth
        end = self._scope_end(select)

        def is_from(k: int, tok: Token) -> bool:
            return tok.is_word("FROM") and not (k > 0 and toks[k - 1].is_word("DISTINCT"))

        from_idx = self._next_at(select + 1, end, depth, is_from)
        if from_idx is None:
            return
        after_from = self._next_at(
            from_idx + 1, end, depth,
            lambda k, t: t.is_word("WHERE") or self._is_clause_word(k, _AFTER_WHERE),
        )
        from_end = after_from if after_from is not None else end
        refs = self._parse_from_list(from_idx + 1, from_end, depth)
        if not refs:
            return

        where = after_from if after_from is not None and toks[after_from].is_word("WHERE") else None
        if where is not None:
            stop = self._next_at(where + 1, end, depth, lambda k, t: self._is_clause_word(k, _AFTER_WHERE))
            region_end = stop if stop is not None else end
            self._place(refs, where, region_end, None, end)
        else:
            self._place(refs, None, end, after_from, end)

    # ── Write statements ─────────────────────────────────

    def _top_level(self, word: str, start: int = 0) -> int | None:
        return self._next_at(start, len(self.tokens), 0, lambda k, t: t.is_word(word))

    def _target(self, i: int) -> tuple[_TableRef | None, int]:
        """Parse ``[ONLY] name [[AS] alias]`` at *i*."""
        toks = self.tokens
        if i < len(toks) and toks[i].is_word("ONLY"):
            i += 1
        parts, j = dotted_name(toks, i)
        if not parts:
            raise TenantScopeError(RejectionReason.STRUCTURAL_INVALID, "Missing target table.")
        written = self.statement.text[toks[i].start:toks[j - 1].end]
        ref = _TableRef(table=".".join(parts), ref=written)
        if j < len(toks) and toks[j].is_word("AS") and j + 1 < len(toks):
            ref.ref = toks[j + 1].text
            j += 2
        elif j < len(toks) and toks[j].is_identifier and toks[j].upper not in _NOT_ALIASES:
            ref.ref = toks[j].text
            j += 1
        return (ref if self._is_partitioned(parts) else None), j

    def _check_assignments(self, start: int, end: int) -> None:
        """SET list must not move rows to another tenant."""
        toks = self.tokens
        k = start
        at_target = True  # start of an assignment: ``col =`` or ``(a, b) =``
        while k < end:
            tok = toks[k]
            if tok.depth == 0 and tok.kind is TokenKind.COMMA:
                at_target = True
                k += 1
                continue
            if tok.depth == 0 and tok.kind is TokenKind.LPAREN:
                close = matching_paren(toks, k)
                if at_target and any(
                    t.is_identifier and t.name == self.tenant_column for t in toks[k + 1:close]
                ):
                    raise TenantScopeError(
                        RejectionReason.FORBIDDEN_OPERATION,
                        f"Tuple assignment to '{self.tenant_column}' is not allowed.",
                        category=CROSS_TENANT_WRITE,
                    )
                at_target = False
                k = close + 1
                continue
            is_target = at_target
            at_target = False
            if is_target and tok.depth == 0 and tok.is_identifier and tok.name == self.tenant_column:
                nxt = toks[k + 1] if k + 1 < end else None
                if nxt is not None and nxt.kind is TokenKind.OPERATOR and nxt.text == "=":
                    value_end = self._next_at(
                        k + 2, end, 0, lambda _k, t: t.kind is TokenKind.COMMA or t.is_word("FROM", "WHERE")
                    )
                    value = toks[k + 2:value_end if value_end is not None else end]
                    if len(value) != 1 or not self._value_ok(value[0]):
                        raise TenantScopeError(
                            RejectionReason.FORBIDDEN_OPERATION,
                            f"Assigning '{self.tenant_column}' to another tenant is not allowed.",
                            category=CROSS_TENANT_WRITE,
                        )
            k += 1

    def _rewrite_update(self) -> None:
        target, _ = self._target(1)
        set_idx = self._top_level("SET")
        where = self._top_level("WHERE")
        returning = self._top_level("RETURNING")
        end = returning if returning is not None else len(self.tokens)
        from_idx = self._next_at(
            set_idx + 1, end, 0,
            lambda k, t: t.is_word("FROM") and not self.tokens[k - 1].is_word("DISTINCT"),
        )
        set_end = next(x for x in (from_idx, where, end) if x is not None)
        if target is not None:
            self._check_assignments(set_idx + 1, set_end)

        refs = [target] if target is not None else []
        if from_idx is not None:
            refs += self._parse_from_list(from_idx + 1, where if where is not None else end, 0)
        self._place(refs, where, end, returning, end)

    def _rewrite_delete(self) -> None:
        target, j = self._target(2)
        where = self._top_level("WHERE")
        returning = self._top_level("RETURNING")
        end = returning if returning is not None else len(self.tokens)
        refs = [target] if target is not None else []
        if j < len(self.tokens) and self.tokens[j].is_word("USING"):
            refs += self._parse_from_list(j + 1, where if where is not None else end, 0)
        self._place(refs, where, end, returning, end)

    def _rewrite_insert(self) -> None:
        toks = self.tokens
        parts, i = dotted_name(toks, 2)
        if not parts:
            raise TenantScopeError(RejectionReason.STRUCTURAL_INVALID, "Missing INSERT target table.")
        written = self.statement.text[toks[2].start:toks[i - 1].end]
        ref = written
        if i < len(toks) and toks[i].is_word("AS") and i + 1 < len(toks):
            ref = toks[i + 1].text
            i += 2
        partitioned = self._is_partitioned(parts)
        table = ".".join(parts)

        col_open = col_close = None
        if i < len(toks) and toks[i].kind is TokenKind.LPAREN and not (
            i + 1 < len(toks) and toks[i + 1].is_word("SELECT", "WITH", "VALUES")
        ):
            col_open, col_close = i, matching_paren(toks, i)
            i = col_close + 1
        if i < len(toks) and toks[i].is_word("OVERRIDING"):
            i += 3  # OVERRIDING { SYSTEM | USER } VALUE

        if not partitioned:
            return
        if col_open is None or col_close is None:
            raise TenantScopeError(
                RejectionReason.STRUCTURAL_INVALID,
                f"INSERT into tenant-partitioned table '{table}' requires an explicit column list.",
            )
        columns = [t.name for t in toks[col_open + 1:col_close] if t.is_identifier]
        tenant_pos = columns.index(self.tenant_column) if self.tenant_column in columns else None

        source = toks[i] if i < len(toks) else None
        if source is not None and source.is_word("VALUES"):
            self._insert_values(i + 1, tenant_pos)
        elif source is not None and source.is_word("SELECT", "WITH"):
            select = self._next_at(i, len(toks), 0, lambda k, t: t.is_word("SELECT"))
            if select is None:
                raise TenantScopeError(RejectionReason.STRUCTURAL_INVALID, "INSERT source has no SELECT.")
            self._insert_projection(select, tenant_pos)
        else:
            raise TenantScopeError(
                RejectionReason.STRUCTURAL_INVALID,
                f"INSERT into '{table}' must use VALUES or SELECT to be tenant-scoped.",
            )

        if tenant_pos is None:
            self._insert(toks[col_close].start, f", {self.tenant_column}")
            self.added += 1
        if table not in self.scoped:
            self.scoped.append(table)

        self._rewrite_on_conflict(table, ref)

    def _insert_values(self, i: int, tenant_pos: int | None) -> None:
        toks = self.tokens
        while i < len(toks) and toks[i].kind is TokenKind.LPAREN and toks[i].depth == 0:
            close = matching_paren(toks, i)
            if tenant_pos is None:
                self._insert(toks[close].start, f", {_TENANT_MARKER}")
            else:
                items = self._split_items(i + 1, close, 1)
                if tenant_pos >= len(items):
                    raise TenantScopeError(
                        RejectionReason.STRUCTURAL_INVALID, "VALUES row is shorter than the column list."
                    )
                item = items[tenant_pos]
                if len(item) != 1 or not self._value_ok(item[0]):
                    raise TenantScopeError(
                        RejectionReason.FORBIDDEN_OPERATION,
                        f"Writing rows for another tenant via '{self.tenant_column}' is not allowed.",
                        category=CROSS_TENANT_WRITE,
                    )
            i = close + 1
            if i < len(toks) and toks[i].kind is TokenKind.COMMA:
                i += 1
                continue
            break

    def _insert_projection(self, select: int, tenant_pos: int | None) -> None:
        toks = self.tokens
        end = self._scope_end(select)
        stop = self._next_at(
            select + 1, end, 0,
            lambda k, t: t.is_word("FROM", "WHERE", "INTO") or self._is_clause_word(k, _AFTER_WHERE),
        )
        proj_end = stop if stop is not None else end
        start = select + 1
        while start < proj_end and toks[start].is_word("DISTINCT", "ALL"):
            start += 1
        if tenant_pos is None:
            self._insert(toks[proj_end - 1].end, f", {_TENANT_MARKER}")
            return
        items = self._split_items(start, proj_end, 0)
        if tenant_pos >= len(items) or not items[tenant_pos] or not self._value_ok(items[tenant_pos][0]) or not (
            len(items[tenant_pos]) == 1
            or (len(items[tenant_pos]) == 2 and items[tenant_pos][1].is_identifier)
            or (len(items[tenant_pos]) == 3 and items[tenant_pos][1].is_word("AS"))
        ):
            raise TenantScopeError(
                RejectionReason.FORBIDDEN_OPERATION,
                f"Copying rows into another tenant via '{self.tenant_column}' is not allowed.",
                category=CROSS_TENANT_WRITE,
            )

    def _split_items(self, start: int, end: int, depth: int) -> list[list[Token]]:
        items: list[list[Token]] = [[]]
        for tok in self.tokens[start:end]:
            if tok.depth == depth and tok.kind is TokenKind.COMMA:
                items.append([])
            else:
                items[-1].append(tok)
        return items

    def _rewrite_on_conflict(self, table: str, ref: str) -> None:
        toks = self.tokens
        on = self._next_at(
            0, len(toks), 0,
            lambda k, t: t.is_word("ON") and k + 1 < len(toks) and toks[k + 1].is_word("CONFLICT"),
        )
        if on is None:
            return
        do_update = self._next_at(
            on, len(toks), 0,
            lambda k, t: t.is_word("DO") and k + 1 < len(toks) and toks[k + 1].is_word("UPDATE"),
        )
        if do_update is None:
            return
        set_idx = do_update + 2
        returning = self._top_level("RETURNING", set_idx)
        end = returning if returning is not None else len(toks)
        where = self._next_at(set_idx + 1, end, 0, lambda k, t: t.is_word("WHERE"))
        self._check_assignments(set_idx + 1, where if where is not None else end)
        self._place([_TableRef(table=table, ref=ref)], where, end, returning, end)

    # ── Driver ───────────────────────────────────────────

    def run(self) -> RewrittenStatement:
        kind = self.statement.kind
        if kind is StatementKind.UPDATE:
            self._rewrite_update()
        elif kind is StatementKind.DELETE:
            self._rewrite_delete()
        elif kind is StatementKind.INSERT:
            self._rewrite_insert()

        for i, tok in enumerate(self.tokens):
            if tok.is_word("SELECT"):
                self._rewrite_select_scope(i)

        sql = self._render()
        live = self.added > 0 or any(t.kind is TokenKind.PARAM and t.text == _TENANT_MARKER for t in self.tokens)
        return RewrittenStatement(
            sql=sql,
            params={TENANT_PARAM: self.tenant_id} if live else {},
            tables_scoped=tuple(self.scoped),
            predicates_added=self.added,
        )

    def _render(self) -> str:
        text = self.statement.text
        pending = sorted(self.insertions, key=lambda ins: (ins.pos, ins.order))
        out: list[str] = []
        cursor = 0
        n = 0

        def flush(upto: int) -> None:
            nonlocal cursor, n
            while n < len(pending) and pending[n].pos <= upto:
                out.append(text[cursor:pending[n].pos])
                cursor = max(cursor, pending[n].pos)
                out.append(pending[n].text)
                n += 1
            out.append(text[cursor:upto])
            cursor = upto

        for k, tok in enumerate(self.tokens):
            flush(tok.start)
            out.append(_escape(tok, text, self.tokens[k + 1] if k + 1 < len(self.tokens) else None))
            cursor = tok.end
        flush(len(text))
        return "".join(out)


def _escape(tok: Token, text: str, nxt: Token | None) -> str:
    """Render one token so that only ``:tenant_id`` survives as a bind marker."""
    if tok.kind is TokenKind.PARAM:
        return tok.text if tok.text == _TENANT_MARKER or tok.text.startswith("$") else "\\" + tok.text
    if tok.kind in (TokenKind.STRING, TokenKind.QUOTED_IDENT):
        return _BIND_RE.sub(r"\\:\1", tok.text)
    if tok.kind is TokenKind.OPERATOR and tok.text == ":" and nxt is not None and nxt.start == tok.end:
        return "\\:"
    return tok.text


# ── Public API ───────────────────────────────────────────


def rewrite_for_tenant(
    statement: ParsedStatement,
    tenant_id: str,
    partitioned_tables: Iterable[str],
    tenant_column: str = "organization_id",
) -> RewrittenStatement:
    """Confine *statement* to *tenant_id*.

    Raises
    ------
    TenantScopeError
        When the statement cannot be confined (cross-tenant write, INSERT
        without a column list, unsupported FROM shape).
    """
    rewriter = _Rewriter(
        statement=statement,
        tenant_id=str(tenant_id),
        tenant_column=tenant_column.lower(),
        partitioned=frozenset(t.lower() for t in partitioned_tables),
    )
    rewritten = rewriter.run()
    logger.debug(
        "Tenant scope: tables=%s predicates_added=%d",
        list(rewritten.tables_scoped), rewritten.predicates_added,
    )
    return rewritten
