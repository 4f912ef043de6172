"""
Lightweight SQL tokenizer.

Every later stage (classifier, scanners, tenant-scope rewriter) works on the
token stream produced here instead of raw string spans, so keywords hidden in
string literals, comments or odd whitespace are seen for what they are.

Token kinds:
  - WORD          unquoted identifier or keyword
  - QUOTED_IDENT  "double quoted" / `backticked` identifier
  - STRING        'standard', E'escaped', B''/X''/N'' and $tag$dollar$tag$ strings
  - NUMBER, PARAM (:name, $1), OPERATOR
  - LPAREN, RPAREN, COMMA, DOT, SEMICOLON
  - COMMENT, WHITESPACE   (dropped by ``significant``)

Each token records its ``start``/``end`` offsets in the source text and the
parenthesis depth it sits at.  An opening paren carries the outer depth, its
contents depth + 1, and the closing paren the outer depth again.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class TokenKind(str, Enum):
    WORD = "word"
    QUOTED_IDENT = "quoted_ident"
    STRING = "string"
    NUMBER = "number"
    PARAM = "param"
    OPERATOR = "operator"
    LPAREN = "lparen"
    RPAREN = "rparen"
    COMMA = "comma"
    DOT = "dot"
    SEMICOLON = "semicolon"
    COMMENT = "comment"
    WHITESPACE = "whitespace"


class SQLTokenizeError(ValueError):
    """Raised for text that cannot be tokenized (unterminated literal, bad parens)."""


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    start: int
    end: int
    depth: int = 0

    @property
    def upper(self) -> str:
        return self.text.upper() if self.kind is TokenKind.WORD else ""

    def is_word(self, *words: str) -> bool:
        return self.kind is TokenKind.WORD and self.text.upper() in words

    @property
    def is_identifier(self) -> bool:
        return self.kind in (TokenKind.WORD, TokenKind.QUOTED_IDENT)

    @property
    def name(self) -> str:
        """Lower-cased identifier value with quoting removed."""
        if self.kind is TokenKind.QUOTED_IDENT:
            body = self.text[1:-1] if self.text[0] in "\"`" else self.text[3:-1]
            quote = self.text[-1]
            return body.replace(quote * 2, quote).lower()
        return self.text.lower()

    @property
    def literal_value(self) -> str | None:
        """Value of a simple string / number literal, ``None`` for anything else."""
        if self.kind is TokenKind.NUMBER:
            return self.text
        if self.kind is TokenKind.STRING and self.text.startswith("'"):
            return self.text[1:-1].replace("''", "'")
        return None


# ── Patterns (order matters) ─────────────────────────────

_PATTERNS: list[tuple[TokenKind, re.Pattern[str]]] = [
    (TokenKind.WHITESPACE, re.compile(r"\s+")),
    (TokenKind.COMMENT, re.compile(r"--[^\n]*")),
    (TokenKind.STRING, re.compile(r"[Ee]'(?:[^'\\]|\\.|'')*'", re.DOTALL)),
    (TokenKind.STRING, re.compile(r"(?:[BbXxNn]|[Uu]&)?'(?:[^']|'')*'", re.DOTALL)),
    (TokenKind.QUOTED_IDENT, re.compile(r'(?:[Uu]&)?"(?:[^"]|"")*"', re.DOTALL)),
    (TokenKind.QUOTED_IDENT, re.compile(r"`(?:[^`]|``)*`", re.DOTALL)),
    (TokenKind.NUMBER, re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[Ee][+-]?\d+)?")),
    (TokenKind.OPERATOR, re.compile(r"::")),
    (TokenKind.PARAM, re.compile(r":[A-Za-z_]\w*|\$\d+")),
    (TokenKind.WORD, re.compile(r"[^\W\d][\w$]*")),
    (TokenKind.LPAREN, re.compile(r"\(")),
    (TokenKind.RPAREN, re.compile(r"\)")),
    (TokenKind.COMMA, re.compile(r",")),
    (TokenKind.DOT, re.compile(r"\.")),
    (TokenKind.SEMICOLON, re.compile(r";")),
]

_DOLLAR_OPEN = re.compile(r"\$(?:[A-Za-z_]\w*)?\$")
_OPERATOR = re.compile(r"<>|!=|<=|>=|\|\||->>|->|#>>|#>|@>|<@|&&|[^\s\w'\"`]")


def _scan_block_comment(sql: str, pos: int) -> int:
    """Return the end offset of a (possibly nested) block comment at *pos*."""
    depth = 0
    i = pos
    n = len(sql)
    while i < n:
        if sql.startswith("/*", i):
            depth += 1
            i += 2
        elif sql.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return n  # unterminated: swallows the rest of the text


def _raw_tokens(sql: str) -> list[tuple[TokenKind, int, int]]:
    spans: list[tuple[TokenKind, int, int]] = []
    pos = 0
    n = len(sql)
    while pos < n:
        if sql.startswith("/*", pos):
            end = _scan_block_comment(sql, pos)
            spans.append((TokenKind.COMMENT, pos, end))
            pos = end
            continue

        dollar = _DOLLAR_OPEN.match(sql, pos)
        if dollar:
            tag = dollar.group(0)
            close = sql.find(tag, dollar.end())
            if close == -1:
                raise SQLTokenizeError(f"Unterminated dollar-quoted string starting at offset {pos}.")
            end = close + len(tag)
            spans.append((TokenKind.STRING, pos, end))
            pos = end
            continue

        for kind, pattern in _PATTERNS:
            m = pattern.match(sql, pos)
            if m and m.end() > pos:
                spans.append((kind, pos, m.end()))
                pos = m.end()
                break
        else:
            if sql[pos] in "'\"`":
                raise SQLTokenizeError(f"Unterminated quoted literal starting at offset {pos}.")
            m = _OPERATOR.match(sql, pos)
            end = m.end() if m else pos + 1
            spans.append((TokenKind.OPERATOR, pos, end))
            pos = end
    return spans


def tokenize(sql: str) -> list[Token]:
    """Split *sql* into tokens, including whitespace and comments.

    Raises
    ------
    SQLTokenizeError
        On unterminated literals or unbalanced parentheses.
    """
    tokens: list[Token] = []
    depth = 0
    for kind, start, end in _raw_tokens(sql):
        if kind is TokenKind.LPAREN:
            tokens.append(Token(kind, sql[start:end], start, end, depth))
            depth += 1
            continue
        if kind is TokenKind.RPAREN:
            depth -= 1
            if depth < 0:
                raise SQLTokenizeError(f"Unbalanced ')' at offset {start}.")
        tokens.append(Token(kind, sql[start:end], start, end, depth))
    if depth != 0:
        raise SQLTokenizeError("Unbalanced parentheses: missing ')'.")
    return tokens


def significant(tokens: list[Token]) -> list[Token]:
    """Drop whitespace and comment tokens."""
    return [t for t in tokens if t.kind not in (TokenKind.WHITESPACE, TokenKind.COMMENT)]


def strip_comments(sql: str) -> str:
    """Remove ``--`` and ``/* */`` comments, leaving string literals intact.

    Each comment becomes a single space so neighbouring tokens can never fuse
    into a new keyword (``DR/**/OP`` stays two words).
    """
    parts: list[str] = []
    for tok in tokenize(sql):
        parts.append(" " if tok.kind is TokenKind.COMMENT else tok.text)
    return "".join(parts).strip()


def split_statements(tokens: list[Token]) -> list[list[Token]]:
    """Split significant tokens into statements at depth-0 semicolons.

    Empty statements (e.g. a trailing ``;``) are dropped.
    """
    statements: list[list[Token]] = []
    current: list[Token] = []
    for tok in tokens:
        if tok.kind is TokenKind.SEMICOLON and tok.depth == 0:
            if current:
                statements.append(current)
            current = []
            continue
        current.append(tok)
    if current:
        statements.append(current)
    return statements


def dotted_name(tokens: list[Token] | tuple[Token, ...], index: int) -> tuple[list[str], int]:
    """Read ``a`` / ``schema.table`` / ``t.col`` starting at *index*.

    Returns the lower-cased name parts and the index just past the name
    (``([], index)`` when no identifier starts there).
    """
    parts: list[str] = []
    i = index
    while i < len(tokens) and tokens[i].is_identifier:
        parts.append(tokens[i].name)
        if i + 2 < len(tokens) and tokens[i + 1].kind is TokenKind.DOT and tokens[i + 2].is_identifier:
            i += 2
            continue
        i += 1
        break
    return parts, i


def matching_paren(tokens: list[Token] | tuple[Token, ...], index: int) -> int:
    """Index of the ``)`` closing the ``(`` at *index*."""
    depth = tokens[index].depth
    for j in range(index + 1, len(tokens)):
        if tokens[j].kind is TokenKind.RPAREN and tokens[j].depth == depth:
            return j
    raise SQLTokenizeError("Unbalanced parentheses: missing ')'.")
