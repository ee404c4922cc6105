"""
Matcher and computation expressions for usage meters.

Expressions are small immutable trees serialized to JSON-logic text for
the remote service. Construction checks operator arity, so any tree that
exists is syntactically valid. A local evaluator mirrors the remote
semantics closely enough to check matchers against sample events.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Tuple, Union

from .errors import ValidationError

DIMENSIONS_PREFIX = "dimensions"
ATTRIBUTES_PREFIX = "attributes"

COMPARISON_OPERATORS = frozenset({"==", "!=", "<", "<=", ">", ">=", "in"})
LOGIC_OPERATORS = frozenset({"and", "or", "!"})
ARITHMETIC_OPERATORS = frozenset({"+", "-", "*", "/"})

# (min operands, max operands); None means unbounded
_ARITY: Dict[str, Tuple[int, Union[int, None]]] = {
    "==": (2, 2),
    "!=": (2, 2),
    "<": (2, 2),
    "<=": (2, 2),
    ">": (2, 2),
    ">=": (2, 2),
    "in": (2, 2),
    "and": (1, None),
    "or": (1, None),
    "!": (1, 1),
    "+": (1, None),
    "-": (1, 2),
    "*": (2, None),
    "/": (2, 2),
}


class Expression(ABC):
    """Base class for expression nodes."""

    @abstractmethod
    def to_json_logic(self) -> Any:
        """JSON-logic structure for this node."""

    @abstractmethod
    def variables(self) -> FrozenSet[str]:
        """All variable paths referenced by this expression."""

    @abstractmethod
    def evaluate(self, data: Mapping[str, Any]) -> Any:
        """Evaluate against an event rendered as nested dimensions and attributes."""

    def serialize(self) -> str:
        """Render as the JSON-logic text accepted by the remote service."""
        return json.dumps(self.to_json_logic())

    @property
    def is_boolean(self) -> bool:
        return False

    @property
    def is_numeric(self) -> bool:
        return False


@dataclass(frozen=True)
class Var(Expression):
    """Reference to an event field such as ``dimensions.country``."""
    path: str

    def __post_init__(self):
        if not self.path or not self.path.strip():
            raise ValidationError("variable path cannot be empty")
        if any(not part for part in self.path.split(".")):
            raise ValidationError(f"malformed variable path: '{self.path}'")

    @property
    def prefix(self) -> str:
        return self.path.split(".", 1)[0]

    @property
    def field_name(self) -> str:
        parts = self.path.split(".", 1)
        return parts[1] if len(parts) == 2 else parts[0]

    @property
    def is_numeric(self) -> bool:
        return self.prefix == ATTRIBUTES_PREFIX

    def to_json_logic(self) -> Any:
        return {"var": self.path}

    def variables(self) -> FrozenSet[str]:
        return frozenset({self.path})

    def evaluate(self, data: Mapping[str, Any]) -> Any:
        current: Any = data
        for part in self.path.split("."):
            if not isinstance(current, Mapping) or part not in current:
                return None
            current = current[part]
        return current


@dataclass(frozen=True)
class Literal(Expression):
    """Constant operand: string, number, boolean or a list of those."""
    value: Any

    def __post_init__(self):
        scalars = (str, int, float, bool)
        if isinstance(self.value, (list, tuple)):
            if not all(isinstance(item, scalars) for item in self.value):
                raise ValidationError("list literals may only contain scalar values")
            object.__setattr__(self, "value", tuple(self.value))
        elif self.value is not None and not isinstance(self.value, scalars):
            raise ValidationError(f"unsupported literal type: {type(self.value).__name__}")

    @property
    def is_boolean(self) -> bool:
        return isinstance(self.value, bool)

    @property
    def is_numeric(self) -> bool:
        return isinstance(self.value, (int, float)) and not isinstance(self.value, bool)

    def to_json_logic(self) -> Any:
        if isinstance(self.value, tuple):
            return list(self.value)
        return self.value

    def variables(self) -> FrozenSet[str]:
        return frozenset()

    def evaluate(self, data: Mapping[str, Any]) -> Any:
        if isinstance(self.value, tuple):
            return list(self.value)
        return self.value


@dataclass(frozen=True)
class Operation(Expression):
    """Operator applied to an ordered tuple of operands."""
    operator: str
    operands: Tuple[Expression, ...]

    def __post_init__(self):
        if self.operator not in _ARITY:
            raise ValidationError(f"unsupported operator: '{self.operator}'")
        object.__setattr__(self, "operands", tuple(self.operands))
        low, high = _ARITY[self.operator]
        count = len(self.operands)
        if count < low or (high is not None and count > high):
            expected = str(low) if low == high else f"{low}..{high or 'n'}"
            raise ValidationError(
                f"operator '{self.operator}' takes {expected} operands, got {count}"
            )
        for operand in self.operands:
            if not isinstance(operand, Expression):
                raise ValidationError(f"operand is not an expression: {operand!r}")
        if self.operator in LOGIC_OPERATORS:
            for operand in self.operands:
                if not operand.is_boolean:
                    raise ValidationError(
                        f"operator '{self.operator}' requires boolean operands"
                    )
        if self.operator in ARITHMETIC_OPERATORS:
            for operand in self.operands:
                if not operand.is_numeric:
                    raise ValidationError(
                        f"operator '{self.operator}' requires numeric operands"
                    )
        if self.operator == "in":
            haystack = self.operands[1]
            if not (isinstance(haystack, Literal) and isinstance(haystack.value, tuple)):
                raise ValidationError("operator 'in' requires a list literal as second operand")

    @property
    def is_boolean(self) -> bool:
        return self.operator in COMPARISON_OPERATORS or self.operator in LOGIC_OPERATORS

    @property
    def is_numeric(self) -> bool:
        return self.operator in ARITHMETIC_OPERATORS

    def to_json_logic(self) -> Any:
        return {self.operator: [operand.to_json_logic() for operand in self.operands]}

    def variables(self) -> FrozenSet[str]:
        paths: FrozenSet[str] = frozenset()
        for operand in self.operands:
            paths = paths | operand.variables()
        return paths

    def evaluate(self, data: Mapping[str, Any]) -> Any:
        op = self.operator
        if op == "and":
            return all(operand.evaluate(data) for operand in self.operands)
        if op == "or":
            return any(operand.evaluate(data) for operand in self.operands)
        if op == "!":
            return not self.operands[0].evaluate(data)

        values = [operand.evaluate(data) for operand in self.operands]
        if op == "==":
            return values[0] == values[1]
        if op == "!=":
            return values[0] != values[1]
        if op == "in":
            return values[0] in values[1]
        if op in ("<", "<=", ">", ">="):
            left, right = values
            if left is None or right is None:
                return False
            left, right = float(left), float(right)
            return {
                "<": left < right,
                "<=": left <= right,
                ">": left > right,
                ">=": left >= right,
            }[op]

        numbers = [float(value) for value in values]
        if op == "+":
            return sum(numbers)
        if op == "-":
            return -numbers[0] if len(numbers) == 1 else numbers[0] - numbers[1]
        if op == "*":
            result = 1.0
            for number in numbers:
                result *= number
            return result
        return numbers[0] / numbers[1]


def dimension(name: str) -> Var:
    """Reference a dimension of the event."""
    return Var(f"{DIMENSIONS_PREFIX}.{name}")


def attribute(name: str) -> Var:
    """Reference an attribute of the event."""
    return Var(f"{ATTRIBUTES_PREFIX}.{name}")


def _operand(value: Any) -> Expression:
    return value if isinstance(value, Expression) else Literal(value)


def equals(left: Any, right: Any) -> Operation:
    return Operation("==", (_operand(left), _operand(right)))


def not_equals(left: Any, right: Any) -> Operation:
    return Operation("!=", (_operand(left), _operand(right)))


def compare(operator: str, left: Any, right: Any) -> Operation:
    if operator not in COMPARISON_OPERATORS:
        raise ValidationError(f"not a comparison operator: '{operator}'")
    return Operation(operator, (_operand(left), _operand(right)))


def one_of(left: Any, values: Iterable[Any]) -> Operation:
    return Operation("in", (_operand(left), Literal(list(values))))


def all_of(*conditions: Expression) -> Operation:
    return Operation("and", conditions)


def any_of(*conditions: Expression) -> Operation:
    return Operation("or", conditions)


def negate(condition: Expression) -> Operation:
    return Operation("!", (condition,))


def constant(value: Union[int, float]) -> Literal:
    literal = Literal(value)
    if not literal.is_numeric:
        raise ValidationError(f"computation constant must be numeric, got {value!r}")
    return literal


def dimension_filter(filters: Mapping[str, Any]) -> Expression:
    """Build a matcher from ``{dimension: value or [values]}``.

    A single entry yields one comparison; several entries are joined with
    ``and``.
    """
    if not filters:
        raise ValidationError("dimension filter needs at least one entry")
    conditions = []
    for name, value in filters.items():
        if isinstance(value, (list, tuple)):
            conditions.append(one_of(dimension(name), value))
        else:
            conditions.append(equals(dimension(name), value))
    return conditions[0] if len(conditions) == 1 else all_of(*conditions)


def from_json_logic(data: Any) -> Expression:
    """Parse a decoded JSON-logic document into an expression tree."""
    if isinstance(data, Mapping):
        if len(data) != 1:
            raise ValidationError(f"JSON-logic node must have exactly one operator: {data!r}")
        operator, args = next(iter(data.items()))
        if operator == "var":
            if not isinstance(args, str):
                raise ValidationError("'var' expects a path string")
            return Var(args)
        if not isinstance(args, list):
            args = [args]
        if operator == "in" and len(args) == 2 and isinstance(args[1], list):
            return Operation("in", (from_json_logic(args[0]), Literal(args[1])))
        return Operation(operator, tuple(from_json_logic(arg) for arg in args))
    return Literal(data)


def parse_expression(text: str) -> Expression:
    """Parse JSON-logic text such as ``'{"==": [{"var": "dimensions.country"}, "US"]}'`` or ``'1'``."""
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"invalid JSON-logic text: {e}") from e
    return from_json_logic(decoded)


def validate_references(
    expression: Expression,
    dimensions: Iterable[str],
    attributes: Iterable[str] = (),
) -> None:
    """Check every referenced path against the schema's declared fields.

    Raises:
        ValidationError: If a path names an undeclared dimension/attribute
            or uses an unknown prefix
    """
    declared_dimensions = set(dimensions)
    declared_attributes = set(attributes)
    for path in sorted(expression.variables()):
        var = Var(path)
        if var.prefix == DIMENSIONS_PREFIX:
            if var.field_name not in declared_dimensions:
                raise ValidationError(
                    f"dimension '{var.field_name}' is not declared on the event schema"
                )
        elif var.prefix == ATTRIBUTES_PREFIX:
            if var.field_name not in declared_attributes:
                raise ValidationError(
                    f"attribute '{var.field_name}' is not declared on the event schema"
                )
        else:
            raise ValidationError(f"unknown variable path '{path}'")
