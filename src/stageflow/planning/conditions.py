"""
stageflow - condition evaluator

File: src/stageflow/planning/conditions.py

Purpose
- Compile ``when`` predicates into a small closed set of condition objects and
  evaluate them against a :class:`~stageflow.domain.models.RunContext`.

Accepted forms
- Mapping: ``{branch: main}``, ``{environment: {name: DEPLOY, value: "1"}}``,
  ``{expression: "..."}``, ``{and|all_of: [...]}``, ``{or|any_of: [...]}``,
  ``{not: ...}``. Several keys in one mapping are combined with AND.
- String expression: ``branch == 'main'``, ``branch != 'x'``,
  ``environment['K'] == 'v'`` (also ``env.K``) joined with ``and``/``or``/``not``
  and parentheses.

Functional requirements
- Every unknown or malformed predicate raises ``ConditionError`` at compile
  time; ``evaluate`` itself never raises and has no side effects.
- Branch values with glob characters match shell-style (``release/*``).
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Final

from stageflow.domain.errors import ConditionError

if TYPE_CHECKING:
    from stageflow.domain.models import RunContext

_GLOB_CHARS: Final[frozenset[str]] = frozenset("*?[")
_AND_KEYS: Final[frozenset[str]] = frozenset({"and", "all_of", "allOf"})
_OR_KEYS: Final[frozenset[str]] = frozenset({"or", "any_of", "anyOf"})
_NOT_KEYS: Final[frozenset[str]] = frozenset({"not"})
_LEAF_KEYS: Final[frozenset[str]] = frozenset({"branch", "environment", "expression"})
_KNOWN_KEYS: Final[frozenset[str]] = _AND_KEYS | _OR_KEYS | _NOT_KEYS | _LEAF_KEYS

_TOKEN_RE: Final[re.Pattern[str]] = re.compile(
    r"""\s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=)
      | (?P<punct>[()\[\].])
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    )""",
    re.VERBOSE | re.DOTALL,
)
_ESCAPE_RE: Final[re.Pattern[str]] = re.compile(r"\\(.)", re.DOTALL)


class Condition:
    """Base class of compiled predicates."""

    __slots__ = ()

    def evaluate(self, context: RunContext) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class BranchCondition(Condition):
    pattern: str

    def evaluate(self, context: RunContext) -> bool:
        if _GLOB_CHARS.intersection(self.pattern):
            return fnmatchcase(context.branch, self.pattern)
        return context.branch == self.pattern

    def describe(self) -> str:
        return f"branch == {_quote(self.pattern)}"


@dataclass(frozen=True, slots=True)
class EnvironmentCondition(Condition):
    name: str
    value: str

    def evaluate(self, context: RunContext) -> bool:
        return context.lookup(self.name) == self.value

    def describe(self) -> str:
        return f"environment[{_quote(self.name)}] == {_quote(self.value)}"


@dataclass(frozen=True, slots=True)
class AllOf(Condition):
    conditions: tuple[Condition, ...]

    def evaluate(self, context: RunContext) -> bool:
        return all(condition.evaluate(context) for condition in self.conditions)

    def describe(self) -> str:
        return " and ".join(f"({condition.describe()})" for condition in self.conditions)


@dataclass(frozen=True, slots=True)
class AnyOf(Condition):
    conditions: tuple[Condition, ...]

    def evaluate(self, context: RunContext) -> bool:
        return any(condition.evaluate(context) for condition in self.conditions)

    def describe(self) -> str:
        return " or ".join(f"({condition.describe()})" for condition in self.conditions)


@dataclass(frozen=True, slots=True)
class Not(Condition):
    condition: Condition

    def evaluate(self, context: RunContext) -> bool:
        return not self.condition.evaluate(context)

    def describe(self) -> str:
        return f"not ({self.condition.describe()})"


def evaluate(condition: Condition | None, context: RunContext) -> bool:
    """Evaluate ``condition``; an absent condition is always true."""
    if condition is None:
        return True
    return condition.evaluate(context)


def compile_condition(raw: object, *, node: str = "when") -> Condition:
    """Compile a raw ``when`` value from a pipeline definition."""
    if isinstance(raw, Condition):
        return raw
    if isinstance(raw, str):
        return parse_expression(raw, node=node)
    if isinstance(raw, Mapping):
        return _compile_mapping(raw, node=node)
    raise ConditionError(
        node, f"condition must be a mapping or expression string, got {_type(raw)}"
    )


def _compile_mapping(raw: Mapping[object, object], *, node: str) -> Condition:
    if not raw:
        raise ConditionError(node, "condition mapping must not be empty")
    parts: list[Condition] = []
    for key in raw:
        if not isinstance(key, str) or key not in _KNOWN_KEYS:
            allowed = ", ".join(sorted(_KNOWN_KEYS))
            raise ConditionError(node, f"unknown condition key {key!r}; expected one of: {allowed}")
        value = raw[key]
        path = f"{node}.{key}"
        if key == "branch":
            parts.append(BranchCondition(_scalar(value, path)))
        elif key == "environment":
            parts.append(_compile_environment(value, node=path))
        elif key == "expression":
            if not isinstance(value, str):
                raise ConditionError(path, f"expression must be a string, got {_type(value)}")
            parts.append(parse_expression(value, node=path))
        elif key in _AND_KEYS:
            parts.append(AllOf(_compile_list(value, node=path)))
        elif key in _OR_KEYS:
            parts.append(AnyOf(_compile_list(value, node=path)))
        else:
            parts.append(Not(compile_condition(value, node=path)))
    return parts[0] if len(parts) == 1 else AllOf(tuple(parts))


def _compile_environment(value: object, *, node: str) -> Condition:
    if not isinstance(value, Mapping) or not value:
        raise ConditionError(node, "environment condition must be a non-empty mapping")
    if set(value) <= {"name", "value"}:
        if "name" not in value or "value" not in value:
            raise ConditionError(node, "environment condition requires both 'name' and 'value'")
        return EnvironmentCondition(_scalar(value["name"], node), _scalar(value["value"], node))
    checks = tuple(
        EnvironmentCondition(_scalar(key, node), _scalar(item, f"{node}.{key}"))
        for key, item in value.items()
    )
    return checks[0] if len(checks) == 1 else AllOf(checks)


def _compile_list(value: object, *, node: str) -> tuple[Condition, ...]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)) or not value:
        raise ConditionError(node, "expected a non-empty list of conditions")
    return tuple(
        compile_condition(item, node=f"{node}[{index}]") for index, item in enumerate(value)
    )


def _scalar(value: object, node: str) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (str, int, float)):
        return str(value)
    raise ConditionError(node, f"expected a scalar value, got {_type(value)}")


# ---------------------------------------------------------------------------
# Expression parser
# ---------------------------------------------------------------------------


def parse_expression(text: str, *, node: str = "when") -> Condition:
    """Parse the string form of a condition."""
    tokens = _tokenize(text, node=node)
    if not tokens:
        raise ConditionError(node, "condition expression is empty")
    parser = _ExpressionParser(tokens, node=node)
    condition = parser.parse_or()
    if not parser.at_end():
        raise ConditionError(node, f"unexpected token {parser.peek_value()!r} in {text!r}")
    return condition


def _tokenize(text: str, *, node: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    position = 0
    stripped_end = len(text.rstrip())
    while position < stripped_end:
        match = _TOKEN_RE.match(text, position)
        if match is None or match.end() == position:
            raise ConditionError(node, f"cannot parse condition near {text[position:]!r}")
        kind = match.lastgroup or ""
        value = match.group(kind)
        if kind == "string":
            value = _ESCAPE_RE.sub(r"\1", value[1:-1])
        tokens.append((kind, value))
        position = match.end()
    return tokens


class _ExpressionParser:
    """Recursive-descent parser: or > and > not > comparison."""

    def __init__(self, tokens: list[tuple[str, str]], *, node: str) -> None:
        self._tokens = tokens
        self._index = 0
        self._node = node

    def at_end(self) -> bool:
        return self._index >= len(self._tokens)

    def peek_value(self) -> str | None:
        if self.at_end():
            return None
        return self._tokens[self._index][1]

    def parse_or(self) -> Condition:
        items = [self.parse_and()]
        while self._accept("ident", "or"):
            items.append(self.parse_and())
        return items[0] if len(items) == 1 else AnyOf(tuple(items))

    def parse_and(self) -> Condition:
        items = [self.parse_not()]
        while self._accept("ident", "and"):
            items.append(self.parse_not())
        return items[0] if len(items) == 1 else AllOf(tuple(items))

    def parse_not(self) -> Condition:
        if self._accept("ident", "not"):
            return Not(self.parse_not())
        if self._accept("punct", "("):
            inner = self.parse_or()
            self._expect("punct", ")")
            return inner
        return self.parse_comparison()

    def parse_comparison(self) -> Condition:
        kind, subject = self._next("predicate")
        if kind != "ident":
            raise ConditionError(self._node, f"expected a predicate, got {subject!r}")
        if subject == "branch":
            operator = self._expect_kind("op")
            condition: Condition = BranchCondition(self._expect_kind("string"))
        elif subject in {"environment", "env"}:
            name = self._parse_env_key(subject)
            operator = self._expect_kind("op")
            condition = EnvironmentCondition(name, self._expect_kind("string"))
        else:
            raise ConditionError(
                self._node,
                f"unknown predicate {subject!r}; expected 'branch' or 'environment'",
            )
        return Not(condition) if operator == "!=" else condition

    def _parse_env_key(self, subject: str) -> str:
        if self._accept("punct", "["):
            key = self._expect_kind("string")
            self._expect("punct", "]")
            return key
        if subject == "env" and self._accept("punct", "."):
            return self._expect_kind("ident")
        raise ConditionError(self._node, f"expected {subject}['NAME'] in condition")

    def _accept(self, kind: str, value: str) -> bool:
        if not self.at_end() and self._tokens[self._index] == (kind, value):
            self._index += 1
            return True
        return False

    def _expect(self, kind: str, value: str) -> None:
        if not self._accept(kind, value):
            raise ConditionError(self._node, f"expected {value!r}, got {self.peek_value()!r}")

    def _expect_kind(self, kind: str) -> str:
        token_kind, value = self._next(kind)
        if token_kind != kind:
            raise ConditionError(self._node, f"expected {kind}, got {value!r}")
        return value

    def _next(self, expected: str) -> tuple[str, str]:
        if self.at_end():
            raise ConditionError(self._node, f"unexpected end of condition, expected {expected}")
        token = self._tokens[self._index]
        self._index += 1
        return token


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\")
    if "'" not in value:
        return f"'{escaped}'"
    if '"' not in value:
        return f'"{escaped}"'
    return "'" + escaped.replace("'", "\\'") + "'"


def _type(value: object) -> str:
    return type(value).__name__


__all__ = [
    "AllOf",
    "AnyOf",
    "BranchCondition",
    "Condition",
    "EnvironmentCondition",
    "Not",
    "compile_condition",
    "evaluate",
    "parse_expression",
]
