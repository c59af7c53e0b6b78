"""Reward rule conditions as a small predicate AST.

Stored form (JSON)::

    {"field": "invitee.source", "operator": "eq", "value": "campaign"}
    {"all": [<node>, ...]}
    {"any": [<node>, ...]}
    {"not": <node>}

``None`` or ``{}`` means "always true". Malformed trees are rejected by
``parse`` when a rule is saved; evaluation itself never raises.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

_MISSING = object()


class ConditionError(ValueError):
    """Raised when a stored condition tree is malformed."""


class Operator(Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    EXISTS = "exists"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


_UNARY = frozenset({Operator.EXISTS, Operator.IS_TRUE, Operator.IS_FALSE})
_COLLECTION_VALUE = frozenset({Operator.IN, Operator.NOT_IN})


def resolve_field(payload: Mapping[str, Any], path: str) -> Any:  # noqa: ANN401
    """Walk a dotted path through nested mappings. Missing segments yield _MISSING."""
    value: Any = payload
    for part in path.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _is_number(value: Any) -> bool:  # noqa: ANN401
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _ordered(left: Any, right: Any) -> bool:  # noqa: ANN401
    """Only numbers with numbers, strings with strings."""
    if _is_number(left) and _is_number(right):
        return True
    return isinstance(left, str) and isinstance(right, str)


@dataclass(frozen=True)
class Condition:
    field: str
    operator: Operator
    value: Any = None

    def evaluate(self, payload: Mapping[str, Any]) -> bool:
        actual = resolve_field(payload, self.field)
        op = self.operator

        if op is Operator.EXISTS:
            return actual is not _MISSING and actual is not None
        if actual is _MISSING:
            return op in (Operator.NE, Operator.NOT_IN, Operator.NOT_CONTAINS)
        if op is Operator.IS_TRUE:
            return actual is True
        if op is Operator.IS_FALSE:
            return actual is False
        if op is Operator.EQ:
            return actual == self.value
        if op is Operator.NE:
            return actual != self.value

        if op in (Operator.GT, Operator.GTE, Operator.LT, Operator.LTE):
            if not _ordered(actual, self.value):
                return False
            if op is Operator.GT:
                return actual > self.value
            if op is Operator.GTE:
                return actual >= self.value
            if op is Operator.LT:
                return actual < self.value
            return actual <= self.value

        if op in (Operator.IN, Operator.NOT_IN):
            try:
                found = actual in self.value
            except TypeError:
                return False
            return found if op is Operator.IN else not found

        # contains / not_contains: substring for strings, membership for lists
        if isinstance(actual, str):
            if not isinstance(self.value, str):
                return False
            found = self.value in actual
        elif isinstance(actual, (list, tuple, set, frozenset)):
            found = self.value in actual
        else:
            return False
        return found if op is Operator.CONTAINS else not found

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"field": self.field, "operator": self.operator.value}
        if self.operator not in _UNARY:
            data["value"] = self.value
        return data


@dataclass(frozen=True)
class AllOf:
    conditions: tuple[Node, ...]

    def evaluate(self, payload: Mapping[str, Any]) -> bool:
        return all(node.evaluate(payload) for node in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"all": [node.to_dict() for node in self.conditions]}


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple[Node, ...]

    def evaluate(self, payload: Mapping[str, Any]) -> bool:
        return any(node.evaluate(payload) for node in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"any": [node.to_dict() for node in self.conditions]}


@dataclass(frozen=True)
class Not:
    condition: Node

    def evaluate(self, payload: Mapping[str, Any]) -> bool:
        return not self.condition.evaluate(payload)

    def to_dict(self) -> dict[str, Any]:
        return {"not": self.condition.to_dict()}


@dataclass(frozen=True)
class Always:
    def evaluate(self, payload: Mapping[str, Any]) -> bool:
        return True

    def to_dict(self) -> None:
        return None


Node = Union[Condition, AllOf, AnyOf, Not, Always]


def parse(data: Any) -> Node:  # noqa: ANN401
    """Build a condition tree from its JSON form, raising ConditionError on bad input."""
    if data is None or data == {}:
        return Always()
    if not isinstance(data, Mapping):
        msg = f"Condition must be an object, got {type(data).__name__}"
        raise ConditionError(msg)

    group_keys = data.keys() & {"all", "any", "not"}
    if group_keys:
        if len(data) != 1:
            msg = f"Group node must have exactly one key, got {sorted(data)}"
            raise ConditionError(msg)
        key = next(iter(group_keys))
        body = data[key]
        if key == "not":
            return Not(parse_node(body))
        if not isinstance(body, list) or not body:
            msg = f"'{key}' must be a non-empty list"
            raise ConditionError(msg)
        children = tuple(parse_node(child) for child in body)
        return AllOf(children) if key == "all" else AnyOf(children)

    return _parse_leaf(data)


def parse_node(data: Any) -> Node:  # noqa: ANN401
    """Like parse(), but nested nodes may not be empty."""
    if data is None or data == {}:
        msg = "Nested condition may not be empty"
        raise ConditionError(msg)
    return parse(data)


def _parse_leaf(data: Mapping[str, Any]) -> Condition:
    field_path = data.get("field")
    if not isinstance(field_path, str) or not field_path or any(not part for part in field_path.split(".")):
        msg = f"Invalid condition field: {field_path!r}"
        raise ConditionError(msg)

    raw_operator = data.get("operator")
    try:
        operator = Operator(raw_operator)
    except ValueError:
        msg = f"Unknown condition operator: {raw_operator!r}"
        raise ConditionError(msg) from None

    unknown = set(data) - {"field", "operator", "value"}
    if unknown:
        msg = f"Unexpected condition keys: {sorted(unknown)}"
        raise ConditionError(msg)

    if operator in _UNARY:
        return Condition(field=field_path, operator=operator)
    if "value" not in data:
        msg = f"Operator '{operator.value}' requires a value"
        raise ConditionError(msg)

    value = data["value"]
    if operator in _COLLECTION_VALUE:
        if not isinstance(value, list):
            msg = f"Operator '{operator.value}' requires a list value"
            raise ConditionError(msg)
        value = tuple(value)
    return Condition(field=field_path, operator=operator, value=value)
