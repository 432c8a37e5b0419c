"""Filter expressions for selecting processes.

A filter is a human-typed predicate such as ``cpu > 10 and name == chrome``.
It is parsed once into an immutable expression tree and then evaluated
against any number of process records.

Grammar::

    expr      := expr 'or' expr | expr 'and' expr | condition
    condition := field op value
    field     := cpu | mem | memory | pid | name | user   (case-insensitive)
    op        := >= | <= | != | == | > | <

``or`` binds more loosely than ``and``. There are no parentheses and no
quoting: the value is whatever text follows the operator.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from functools import reduce
from typing import Protocol, TypeVar

logger = logging.getLogger(__name__)

# Machine epsilon of a 32-bit float; percentages closer than this are equal.
FLOAT32_EPSILON = 2.0**-23

UINT32_MAX = 2**32 - 1


# =============================================================================
# Errors
# =============================================================================


class FilterError(Exception):
    """Base class for every filter parse error."""

    kind = "FilterError"

    def details(self) -> dict[str, str]:
        """Structured fields describing the error."""
        return {}


class InvalidExpressionError(FilterError):
    """The expression is malformed (empty, missing parts, no operator)."""

    kind = "InvalidExpression"

    def __init__(self, detail: str) -> None:
        super().__init__(f"Invalid filter expression: {detail}")
        self.detail = detail

    def details(self) -> dict[str, str]:
        return {"detail": self.detail}


class UnknownFieldError(FilterError):
    """The field name is not one of the recognized names or aliases."""

    kind = "UnknownField"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown field '{name}'. Valid fields: cpu, mem, pid, name, user")
        self.name = name

    def details(self) -> dict[str, str]:
        return {"field": self.name}


class UnknownOperatorError(FilterError):
    """The operator token is not one of the six comparison symbols."""

    kind = "UnknownOperator"

    def __init__(self, token: str) -> None:
        super().__init__(f"Unknown operator '{token}'. Valid operators: >, >=, <, <=, ==, !=")
        self.token = token

    def details(self) -> dict[str, str]:
        return {"operator": self.token}


class InvalidValueError(FilterError):
    """The value cannot be parsed as the kind the field requires."""

    kind = "InvalidValue"

    def __init__(self, field: str, value: str, reason: str) -> None:
        super().__init__(f"Invalid value '{value}' for field '{field}': {reason}")
        self.field = field
        self.value = value
        self.reason = reason

    def details(self) -> dict[str, str]:
        return {"field": self.field, "value": self.value, "reason": self.reason}


class TypeMismatchError(FilterError):
    """An ordering operator was applied to a string field."""

    kind = "TypeMismatch"

    def __init__(self, op: str, field: str) -> None:
        super().__init__(f"Type mismatch: operator '{op}' cannot be used with field '{field}'")
        self.op = op
        self.field = field

    def details(self) -> dict[str, str]:
        return {"operator": self.op, "field": self.field}


# =============================================================================
# Vocabulary
# =============================================================================


class ValueKind(Enum):
    """Kind of value a field holds."""

    FLOAT = "float"
    INTEGER = "integer"
    STRING = "string"


class Field(Enum):
    """Process attributes a filter can test."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    NAME = "name"
    USER = "user"

    @classmethod
    def from_name(cls, raw: str) -> Field:
        """Resolve a field name, ignoring case."""
        name = raw.lower()
        name = _FIELD_ALIASES.get(name, name)
        try:
            return cls(name)
        except ValueError:
            raise UnknownFieldError(raw) from None

    @property
    def kind(self) -> ValueKind:
        return _FIELD_KINDS[self]

    @property
    def is_numeric(self) -> bool:
        return self.kind is not ValueKind.STRING


_FIELD_ALIASES = {"memory": "mem"}

_FIELD_KINDS = {
    Field.CPU: ValueKind.FLOAT,
    Field.MEM: ValueKind.FLOAT,
    Field.PID: ValueKind.INTEGER,
    Field.NAME: ValueKind.STRING,
    Field.USER: ValueKind.STRING,
}


class Operator(Enum):
    """Comparison operators, valued by their literal symbol."""

    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    EQ = "=="
    NE = "!="

    @classmethod
    def from_symbol(cls, raw: str) -> Operator:
        """Resolve an operator symbol (exact match)."""
        try:
            return cls(raw)
        except ValueError:
            raise UnknownOperatorError(raw) from None

    @property
    def symbol(self) -> str:
        return self.value

    @property
    def is_comparison(self) -> bool:
        """True for the ordering operators, False for == and !=."""
        return self in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE)


# Two-character operators come first so ">=" is never read as ">".
OPERATOR_SCAN_ORDER = (">=", "<=", "!=", "==", ">", "<")


@dataclass(slots=True, frozen=True)
class FloatValue:
    number: float


@dataclass(slots=True, frozen=True)
class IntValue:
    number: int


@dataclass(slots=True, frozen=True)
class StringValue:
    """String operand with its lowercase form precomputed."""

    text: str
    folded: str

    @classmethod
    def of(cls, text: str) -> StringValue:
        return cls(text=text, folded=text.lower())


Value = FloatValue | IntValue | StringValue


class ProcessRecord(Protocol):
    """Read-only view of a process that filters are evaluated against."""

    @property
    def pid(self) -> int: ...

    @property
    def name(self) -> str: ...

    @property
    def username(self) -> str: ...

    @property
    def cpu_percent(self) -> float: ...

    @property
    def memory_percent(self) -> float: ...


RecordT = TypeVar("RecordT", bound=ProcessRecord)


# =============================================================================
# Expression tree
# =============================================================================


@dataclass(slots=True, frozen=True)
class Condition:
    """A single ``field operator value`` predicate."""

    field: Field
    op: Operator
    value: Value

    def matches(self, record: ProcessRecord) -> bool:
        field, op, value = self.field, self.op, self.value

        if field is Field.CPU and isinstance(value, FloatValue):
            return _compare_float(record.cpu_percent, value.number, op)
        if field is Field.MEM and isinstance(value, FloatValue):
            return _compare_float(record.memory_percent, value.number, op)
        if field is Field.PID and isinstance(value, IntValue):
            return _compare_int(record.pid, value.number, op)
        if field is Field.NAME and isinstance(value, StringValue):
            # Case-insensitive substring match
            if op is Operator.EQ:
                return value.folded in record.name.lower()
            if op is Operator.NE:
                return value.folded not in record.name.lower()
        if field is Field.USER and isinstance(value, StringValue):
            if op is Operator.EQ:
                return record.username == value.text
            if op is Operator.NE:
                return record.username != value.text

        # Unreachable for parsed conditions
        return False


@dataclass(slots=True, frozen=True)
class And:
    left: Expression
    right: Expression

    def matches(self, record: ProcessRecord) -> bool:
        # Walk the right spine in a loop; parsed chains can be thousands long
        node: Expression = self
        while isinstance(node, And):
            if not node.left.matches(record):
                return False
            node = node.right
        return node.matches(record)


@dataclass(slots=True, frozen=True)
class Or:
    left: Expression
    right: Expression

    def matches(self, record: ProcessRecord) -> bool:
        node: Expression = self
        while isinstance(node, Or):
            if node.left.matches(record):
                return True
            node = node.right
        return node.matches(record)


Expression = Condition | And | Or


def _compare_float(actual: float, expected: float, op: Operator) -> bool:
    if op is Operator.GT:
        return actual > expected
    if op is Operator.GTE:
        return actual >= expected
    if op is Operator.LT:
        return actual < expected
    if op is Operator.LTE:
        return actual <= expected
    if op is Operator.EQ:
        return abs(actual - expected) < FLOAT32_EPSILON
    return abs(actual - expected) >= FLOAT32_EPSILON


def _compare_int(actual: int, expected: int, op: Operator) -> bool:
    if op is Operator.GT:
        return actual > expected
    if op is Operator.GTE:
        return actual >= expected
    if op is Operator.LT:
        return actual < expected
    if op is Operator.LTE:
        return actual <= expected
    if op is Operator.EQ:
        return actual == expected
    return actual != expected


# =============================================================================
# Parsing
# =============================================================================

_OR_KEYWORD = re.compile(r"(?<!\S)or(?!\S)", re.IGNORECASE)
_AND_KEYWORD = re.compile(r"(?<!\S)and(?!\S)", re.IGNORECASE)

_UNSIGNED_INT = re.compile(r"\+?[0-9]+")


def parse_filter(expression: str) -> Expression:
    """
    Parse a filter expression into an expression tree.

    ``or`` is split first so it binds more loosely than ``and``. Chains of the
    same connective nest to the right: ``a or b or c`` is ``Or(a, Or(b, c))``.

    Raises:
        FilterError: If any part of the expression is invalid.
    """
    branches = [_parse_conjunction(part) for part in _split_keyword(_OR_KEYWORD, expression)]
    logger.debug("Parsed filter %r into %d or-branches", expression, len(branches))
    return reduce(lambda right, left: Or(left, right), reversed(branches))


def _parse_conjunction(text: str) -> Expression:
    conditions = [_parse_simple(part) for part in _split_keyword(_AND_KEYWORD, text)]
    return reduce(lambda right, left: And(left, right), reversed(conditions))


def _split_keyword(keyword: re.Pattern[str], text: str) -> list[str]:
    """Split ``text`` at every whole-word occurrence of ``keyword``."""
    parts = []
    start = 0
    for match in keyword.finditer(text):
        parts.append(text[start : match.start()])
        start = match.end()
    parts.append(text[start:])
    return parts


def parse_condition(expression: str) -> Condition:
    """
    Parse a filter that must consist of a single condition.

    Raises:
        InvalidExpressionError: If the expression contains ``and``/``or``.
        FilterError: If the condition itself is invalid.
    """
    tree = parse_filter(expression)
    if not isinstance(tree, Condition):
        raise InvalidExpressionError("Use parse_filter for compound expressions")
    return tree


def _parse_simple(expression: str) -> Condition:
    text = expression.strip()
    if not text:
        raise InvalidExpressionError("Empty filter expression")

    # First operator in scan order wins, at its leftmost position. This is a
    # scan rather than a tokenizer: "cpu >> 10" reads as "cpu" ">" "> 10".
    for symbol in OPERATOR_SCAN_ORDER:
        position = text.find(symbol)
        if position != -1:
            break
    else:
        raise InvalidExpressionError("No valid operator found. Use: >, >=, <, <=, ==, !=")

    field_text = text[:position].strip()
    value_text = text[position + len(symbol) :].strip()

    if not field_text:
        raise InvalidExpressionError("Missing field before operator")
    if not value_text:
        raise InvalidExpressionError("Missing value after operator")

    return build_condition(field_text, symbol, value_text)


def build_condition(field_text: str, op_text: str, value_text: str) -> Condition:
    """
    Build a validated condition from already separated tokens.

    The operator/field combination is checked before the value is parsed, so
    ``name > abc`` fails with a type mismatch rather than a value error.

    Raises:
        UnknownFieldError: If ``field_text`` is not a known field.
        UnknownOperatorError: If ``op_text`` is not a known operator.
        TypeMismatchError: If an ordering operator is used on a string field.
        InvalidValueError: If ``value_text`` does not fit the field's kind.
    """
    field = Field.from_name(field_text)
    op = Operator.from_symbol(op_text)

    if op.is_comparison and not field.is_numeric:
        raise TypeMismatchError(op.symbol, field.value)

    return Condition(field=field, op=op, value=_parse_value(field, value_text))


def _parse_value(field: Field, text: str) -> Value:
    if field.kind is ValueKind.FLOAT:
        try:
            number = float(text)
        except ValueError:
            number = None
        # float() also accepts digit separators ("1_0") and non-ASCII digits ("５")
        if number is None or "_" in text or not text.isascii():
            raise InvalidValueError(field.value, text, "Expected a number (e.g., 10 or 5.5)")
        return FloatValue(number)

    if field.kind is ValueKind.INTEGER:
        if _UNSIGNED_INT.fullmatch(text) is None or int(text) > UINT32_MAX:
            raise InvalidValueError(field.value, text, "Expected an integer (e.g., 1000)")
        return IntValue(int(text))

    return StringValue.of(text)


def filter_processes(expression: Expression | None, records: Iterable[RecordT]) -> list[RecordT]:
    """Return the records matching ``expression``, in input order."""
    if expression is None:
        return list(records)
    return [record for record in records if expression.matches(record)]
