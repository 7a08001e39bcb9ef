from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
import re

from sqlbroker.core.errors import AccessDeniedError


class OperationKind(IntEnum):
    READ = 1
    WRITE = 2
    DDL = 3


_READ_VERBS = frozenset({"SELECT", "SHOW", "EXPLAIN", "DESCRIBE", "VALUES", "TABLE"})
_WRITE_VERBS = frozenset({"INSERT", "UPDATE", "DELETE", "MERGE", "UPSERT", "REPLACE"})
_DDL_VERBS = frozenset({"CREATE", "ALTER", "DROP", "TRUNCATE", "RENAME", "COMMENT", "GRANT", "REVOKE"})
# Verbs that can follow a WITH clause as the main statement.
_CTE_MAIN_VERBS = frozenset({"SELECT", "INSERT", "UPDATE", "DELETE", "MERGE", "VALUES", "TABLE"})
_EXPLAIN_OPTIONS = frozenset({"ANALYZE", "ANALYSE", "VERBOSE", "QUERY", "PLAN"})

_WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*")
_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


@dataclass(frozen=True)
class StatementInfo:
    """Leading verb of a statement plus every verb it needs permission for."""

    verb: str
    verbs: tuple[str, ...]
    kind: OperationKind


def _skip_quoted(sql: str, start: int, quote: str) -> int:
    index = start + 1
    while index < len(sql):
        if sql[index] == quote:
            # A doubled quote is an escaped quote inside the literal.
            if index + 1 < len(sql) and sql[index + 1] == quote:
                index += 2
                continue
            return index + 1
        index += 1
    raise AccessDeniedError("access denied: unterminated quoted text in statement")


def _tokens(sql: str) -> list[tuple[str, str]]:
    """Split SQL into words and structural punctuation, dropping comments and literals."""
    tokens: list[tuple[str, str]] = []
    index, length = 0, len(sql)
    while index < length:
        char = sql[index]
        if char.isspace():
            index += 1
        elif sql.startswith("--", index):
            end = sql.find("\n", index)
            index = length if end == -1 else end + 1
        elif sql.startswith("/*", index):
            end = sql.find("*/", index + 2)
            if end == -1:
                raise AccessDeniedError("access denied: unterminated comment in statement")
            index = end + 2
        elif char in "'\"`":
            index = _skip_quoted(sql, index, char)
            tokens.append(("literal", ""))
        elif char == "$" and (tag := _DOLLAR_TAG.match(sql, index)):
            end = sql.find(tag.group(0), tag.end())
            if end == -1:
                raise AccessDeniedError("access denied: unterminated quoted text in statement")
            index = end + len(tag.group(0))
            tokens.append(("literal", ""))
        elif char in "();,":
            tokens.append((char, char))
            index += 1
        elif char.isalpha() or char == "_":
            match = _WORD.match(sql, index)
            tokens.append(("word", match.group(0).upper()))
            index = match.end()
        else:
            index += 1
    return tokens


def _kind_of(verb: str) -> OperationKind:
    if verb in _READ_VERBS:
        return OperationKind.READ
    if verb in _WRITE_VERBS:
        return OperationKind.WRITE
    if verb in _DDL_VERBS:
        return OperationKind.DDL
    raise AccessDeniedError(f"access denied: unsupported statement type {verb}")


def _cte_verbs(tokens: list[tuple[str, str]]) -> tuple[str, list[str]]:
    # Return the main verb after the CTE list and the leading verb of every CTE body.
    depth = 0
    previous_word: str | None = None
    capture_body = False
    body_verbs: list[str] = []
    for kind, value in tokens[1:]:
        if kind == "(":
            if depth == 0 and previous_word in {"AS", "MATERIALIZED"}:
                capture_body = True
            depth += 1
        elif kind == ")":
            depth = max(0, depth - 1)
        elif kind == "word":
            if capture_body:
                body_verbs.append(value)
                capture_body = False
            elif depth == 0:
                if value in _CTE_MAIN_VERBS:
                    return value, body_verbs
                previous_word = value
    raise AccessDeniedError("access denied: unrecognized statement")


def _explained_verbs(words: list[tuple[str, str]]) -> list[str]:
    # Skip EXPLAIN options (bare keywords or a parenthesised list) to reach the explained statement.
    index, depth = 0, 0
    while index < len(words):
        kind, value = words[index]
        if kind == "(":
            depth += 1
        elif kind == ")":
            depth = max(0, depth - 1)
        elif depth == 0 and not (kind == "word" and value in _EXPLAIN_OPTIONS):
            break
        index += 1
    _main, verbs = _statement_verbs(words[index:])
    return verbs


def _statement_verbs(words: list[tuple[str, str]]) -> tuple[str, list[str]]:
    leading = next((index for index, (kind, _value) in enumerate(words) if kind == "word"), None)
    if leading is None:
        raise AccessDeniedError("access denied: unrecognized statement")
    first = words[leading][1]
    if first == "WITH":
        main, body_verbs = _cte_verbs(words[leading:])
        return main, [main, *body_verbs]
    if first == "EXPLAIN":
        # EXPLAIN ANALYZE runs the explained statement, so its verbs need permission too.
        return first, [first, *_explained_verbs(words[leading + 1 :])]
    return first, [first]


def classify_statement(sql: str) -> StatementInfo:
    """Classify a single SQL statement by the verbs it executes.

    Only one statement is accepted; a trailing semicolon is allowed. Verbs
    inside data-modifying CTE bodies and the statement wrapped by ``EXPLAIN``
    count toward the statement's kind.
    """
    statements: list[list[tuple[str, str]]] = [[]]
    for token in _tokens(sql):
        if token[0] == ";":
            statements.append([])
        else:
            statements[-1].append(token)
    statements = [statement for statement in statements if statement]
    if not statements:
        raise AccessDeniedError("access denied: empty statement")
    if len(statements) > 1:
        raise AccessDeniedError("access denied: multiple statements are not allowed")

    words = [(kind, value) for kind, value in statements[0] if kind != "literal"]
    main, found = _statement_verbs(words)
    verbs = tuple(dict.fromkeys(found))
    kind = max(_kind_of(verb) for verb in verbs)
    return StatementInfo(verb=main, verbs=verbs, kind=kind)
