"""
Deterministic SQL safety checks (non-LLM).

These checks run on the comment-stripped token stream before any scoping or
execution.  They never look inside string literals, so a value such as
``'please DROP this'`` is data, not a keyword.

Forbidden-construct catalog (``ForbiddenOperation``, category named):
  1. schema_mutation     CREATE / ALTER / DROP / RENAME / COMMENT ON
  2. privilege_mutation  GRANT / REVOKE / SET ROLE / SET SESSION AUTHORIZATION /
                         RESET ROLE / set_config(...)
  3. engine_escape       EXECUTE / EXEC / CALL / COPY / xp_cmdshell / INTO OUTFILE /
                         LOAD_FILE / pg_read_file / lo_import / dblink ...
  4. bulk_destructive    TRUNCATE
  5. system_catalog      references into blocked schemas (pg_catalog., information_schema.)
  6. data_mutation       INSERT / UPDATE / DELETE / MERGE inside a read-declared call,
                         or nested behind the leading verb of a write

Injection signatures (``InjectionRisk``):
  1. stacked statements  a second statement after a terminator
  2. tautology           OR 1=1, OR 'a'='a', OR TRUE, OR x = x ...
  3. set operations      UNION / INTERSECT / EXCEPT result-set combination
  4. timing probes       SLEEP( / PG_SLEEP( / BENCHMARK( / WAITFOR DELAY
"""
from __future__ import annotations

from sql_gateway.core.context import OperationKind
from sql_gateway.core.logging import get_logger
from sql_gateway.governance.tokenizer import Token, TokenKind, dotted_name
from sql_gateway.governance.violations import RejectionReason, Violation

logger = get_logger(__name__)

# ── Catalog ──────────────────────────────────────────────

SCHEMA_MUTATION = "schema_mutation"
PRIVILEGE_MUTATION = "privilege_mutation"
ENGINE_ESCAPE = "engine_escape"
BULK_DESTRUCTIVE = "bulk_destructive"
SYSTEM_CATALOG = "system_catalog"
DATA_MUTATION = "data_mutation"
CROSS_TENANT_WRITE = "cross_tenant_write"
UNSCOPED_ROW_SOURCE = "unscoped_row_source"

_KEYWORDS: dict[str, str] = {
    "CREATE": SCHEMA_MUTATION,
    "ALTER": SCHEMA_MUTATION,
    "DROP": SCHEMA_MUTATION,
    "RENAME": SCHEMA_MUTATION,
    "GRANT": PRIVILEGE_MUTATION,
    "REVOKE": PRIVILEGE_MUTATION,
    "EXECUTE": ENGINE_ESCAPE,
    "EXEC": ENGINE_ESCAPE,
    "CALL": ENGINE_ESCAPE,
    "COPY": ENGINE_ESCAPE,
    "XP_CMDSHELL": ENGINE_ESCAPE,
    "TRUNCATE": BULK_DESTRUCTIVE,
}

# keyword -> follow-up words that make it forbidden
_KEYWORD_PAIRS: dict[str, tuple[set[str], str]] = {
    "COMMENT": ({"ON"}, SCHEMA_MUTATION),
    "SET": ({"ROLE", "SESSION"}, PRIVILEGE_MUTATION),
    "RESET": ({"ROLE", "SESSION", "ALL"}, PRIVILEGE_MUTATION),
    "INTO": ({"OUTFILE", "DUMPFILE"}, ENGINE_ESCAPE),
}
_STATEMENT_ONLY = {"SET", "RESET"}

# forbidden only when called as a function
_FUNCTIONS: dict[str, str] = {
    "SET_CONFIG": PRIVILEGE_MUTATION,
    "LOAD_FILE": ENGINE_ESCAPE,
    "PG_READ_FILE": ENGINE_ESCAPE,
    "PG_READ_BINARY_FILE": ENGINE_ESCAPE,
    "PG_LS_DIR": ENGINE_ESCAPE,
    "PG_STAT_FILE": ENGINE_ESCAPE,
    "LO_IMPORT": ENGINE_ESCAPE,
    "LO_EXPORT": ENGINE_ESCAPE,
    "DBLINK": ENGINE_ESCAPE,
    "DBLINK_EXEC": ENGINE_ESCAPE,
}

_MUTATION_VERBS = {"INSERT", "UPDATE", "DELETE", "MERGE"}

_TIMING_FUNCTIONS = {"SLEEP", "PG_SLEEP", "PG_SLEEP_FOR", "PG_SLEEP_UNTIL", "BENCHMARK"}
_SET_OPERATORS = {"UNION", "INTERSECT", "EXCEPT"}
_COMPARISONS = {"=", "==", "<>", "!=", "<", ">", "<=", ">="}


def _prev(tokens: list[Token], i: int) -> Token | None:
    return tokens[i - 1] if i > 0 else None


def _next(tokens: list[Token], i: int) -> Token | None:
    return tokens[i + 1] if i + 1 < len(tokens) else None


def _is_column_reference(tokens: list[Token], i: int) -> bool:
    """``t.drop`` is a column named drop, not a keyword."""
    prev = _prev(tokens, i)
    return prev is not None and prev.kind is TokenKind.DOT


# ── Forbidden-construct scanner ──────────────────────────


def check_forbidden_constructs(
    tokens: list[Token],
    operation: OperationKind,
    blocked_schemas: list[str] | None = None,
) -> list[Violation]:
    """Return a list of forbidden-construct violations (empty list = clean)."""
    violations: list[Violation] = []
    blocked = {s.lower() for s in (blocked_schemas or [])}

    def _flag(category: str, found: str) -> None:
        violations.append(
            Violation(
                RejectionReason.FORBIDDEN_OPERATION,
                f"Forbidden construct '{found}' ({category.replace('_', ' ')}).",
                category=category,
            )
        )

    for i, tok in enumerate(tokens):
        nxt = _next(tokens, i)

        if tok.is_identifier and tok.name in blocked and nxt is not None and nxt.kind is TokenKind.DOT:
            _flag(SYSTEM_CATALOG, f"{tok.text}.")
            continue

        if tok.kind is not TokenKind.WORD or _is_column_reference(tokens, i):
            continue
        word = tok.upper

        if word in _KEYWORDS:
            _flag(_KEYWORDS[word], word)
            continue

        if word in _KEYWORD_PAIRS and nxt is not None:
            followers, category = _KEYWORD_PAIRS[word]
            if word in _STATEMENT_ONLY and i > 0:
                pass  # UPDATE ... SET role = ... is an assignment
            elif nxt.upper in followers:
                _flag(category, f"{word} {nxt.upper}")
                continue

        if word in _FUNCTIONS and nxt is not None and nxt.kind is TokenKind.LPAREN:
            _flag(_FUNCTIONS[word], f"{tok.text}(")
            continue

        if operation is OperationKind.READ and word == "INTO":
            _flag(SCHEMA_MUTATION, "SELECT INTO")
            continue

        # a write may carry exactly one mutation verb: its leading one
        if word in _MUTATION_VERBS and (operation is OperationKind.READ or i > 0):
            prev = _prev(tokens, i)
            if word == "UPDATE" and prev is not None and prev.is_word("FOR", "KEY", "DO"):
                continue  # row locking / ON CONFLICT DO UPDATE
            _flag(DATA_MUTATION, word)

    if violations:
        logger.warning("Forbidden constructs: %s", [str(v) for v in violations])
    return violations


# ── Injection-risk scanner ───────────────────────────────


def check_stacked_statements(statements: list[list[Token]]) -> list[Violation]:
    """A second non-empty statement after a terminator is stacked-statement injection."""
    if len(statements) > 1:
        violation = Violation(
            RejectionReason.INJECTION_RISK,
            f"Multi-statement SQL is not allowed (found {len(statements)} statements).",
            category="stacked_statements",
        )
        logger.warning("Injection risk: %s", violation)
        return [violation]
    return []


def _compare(left: str, op: str, right: str) -> bool:
    try:
        lv: float | str = float(left)
        rv: float | str = float(right)
    except ValueError:
        lv, rv = left, right
    if op in ("=", "=="):
        return lv == rv
    if op in ("<>", "!="):
        return lv != rv
    try:
        if op == "<":
            return lv < rv  # type: ignore[operator]
        if op == ">":
            return lv > rv  # type: ignore[operator]
        if op == "<=":
            return lv <= rv  # type: ignore[operator]
        if op == ">=":
            return lv >= rv  # type: ignore[operator]
    except TypeError:
        return False
    return False


def is_constant_true(tokens: list[Token], i: int) -> tuple[bool, int]:
    """Does an always-true condition start at *i*?  Returns (hit, index after it)."""
    negate = False
    while i < len(tokens) and (tokens[i].kind is TokenKind.LPAREN or tokens[i].is_word("NOT")):
        if tokens[i].is_word("NOT"):
            negate = not negate
        i += 1
    if i >= len(tokens):
        return False, i

    tok = tokens[i]
    if tok.is_word("TRUE", "FALSE"):
        return tok.is_word("TRUE") != negate, i + 1

    if i + 2 < len(tokens) and tokens[i + 1].kind is TokenKind.OPERATOR and tokens[i + 1].text in _COMPARISONS:
        left, right = tok.literal_value, tokens[i + 2].literal_value
        if left is not None and right is not None:
            return _compare(left, tokens[i + 1].text, right) != negate, i + 3

    if tok.is_identifier:
        left_name, j = dotted_name(tokens, i)
        if j < len(tokens) and tokens[j].kind is TokenKind.OPERATOR and tokens[j].text in ("=", "=="):
            right_name, k = dotted_name(tokens, j + 1)
            if right_name and right_name == left_name:
                return not negate, k
    return False, i


def check_injection_risk(tokens: list[Token]) -> list[Violation]:
    """Return injection-signature violations for a single statement's tokens."""
    violations: list[Violation] = []

    def _flag(category: str, message: str) -> None:
        violations.append(Violation(RejectionReason.INJECTION_RISK, message, category=category))

    for i, tok in enumerate(tokens):
        if tok.kind is not TokenKind.WORD:
            continue
        word = tok.upper
        nxt = _next(tokens, i)

        if word == "OR":
            hit, _ = is_constant_true(tokens, i + 1)
            if hit:
                _flag("tautology", "Always-true condition after OR detected.")
        elif word in _SET_OPERATORS:
            _flag("set_operation", f"{word} combining result sets is not allowed.")
        elif word in _TIMING_FUNCTIONS and nxt is not None and nxt.kind is TokenKind.LPAREN:
            _flag("timing_probe", f"Timing primitive '{tok.text}(' is not allowed.")
        elif word == "WAITFOR" and nxt is not None and nxt.is_word("DELAY", "TIME"):
            _flag("timing_probe", f"Timing primitive 'WAITFOR {nxt.upper}' is not allowed.")

    if violations:
        logger.warning("Injection risk: %s", [str(v) for v in violations])
    return violations
