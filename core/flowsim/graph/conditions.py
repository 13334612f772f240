"""Branch condition evaluation.

A condition is either a list of condition groups built in the editor or a
free-form expression. Groups win when present: clauses inside a group are
joined by the group's AND/OR, and the groups themselves are OR-ed. An empty
configuration is true.
"""

import re
from collections.abc import Callable, Mapping
from typing import Any

from flowsim.graph.node import ConditionClause, ConditionConfig, ConditionGroup, LogicalOperator
from flowsim.graph.safe_eval import safe_eval
from flowsim.graph.variables import (
    TEMPLATE_TOKEN,
    UNDEFINED,
    RuntimeContext,
    resolve_reference,
    strip_braces,
)

_NUMBER = re.compile(r"^-?\d+(\.\d+)?$")


class ConditionError(Exception):
    """The condition configuration cannot be evaluated."""


def _as_number(value: Any) -> Any:
    if isinstance(value, str) and _NUMBER.match(value.strip()):
        text = value.strip()
        return float(text) if "." in text else int(text)
    return value


def _is_empty(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return True
    if isinstance(value, (str, list, dict)):
        return len(value) == 0
    return not value


def _contains(haystack: Any, needle: Any) -> bool:
    if isinstance(haystack, (list, tuple)):
        return needle in haystack or str(needle) in [str(h) for h in haystack]
    return str(needle) in str(haystack)


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        left, right = _as_number(left), _as_number(right)
        try:
            return bool(op(left, right))
        except TypeError:
            return False

    return compare


CLAUSE_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": lambda a, b: _as_number(a) == _as_number(b),
    "!=": lambda a, b: _as_number(a) != _as_number(b),
    ">": _ordered(lambda a, b: a > b),
    "<": _ordered(lambda a, b: a < b),
    ">=": _ordered(lambda a, b: a >= b),
    "<=": _ordered(lambda a, b: a <= b),
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
    "empty": lambda a, _b: _is_empty(a),
    "not_empty": lambda a, _b: not _is_empty(a),
}


def _operand(value: Any, tree: Mapping[str, Any]) -> Any:
    if isinstance(value, str):
        if value.strip().startswith("{{"):
            return resolve_reference(value, tree)
        return _as_number(value)
    return value


def evaluate_clause(clause: ConditionClause, tree: Mapping[str, Any]) -> bool:
    if not clause.variable:
        return True
    compare = CLAUSE_OPERATORS.get(clause.operator)
    if compare is None:
        raise ConditionError(f"Unknown condition operator '{clause.operator}'")
    left = resolve_reference(clause.variable, tree)
    if left is UNDEFINED:
        left = None
    right = _operand(clause.value, tree)
    if right is UNDEFINED:
        right = None
    return compare(left, right)


def evaluate_groups(groups: list[ConditionGroup], context: RuntimeContext) -> bool:
    tree = context.value_tree()
    for group in groups:
        results = [evaluate_clause(clause, tree) for clause in group.conditions]
        if group.logical_operator == LogicalOperator.OR:
            matched = any(results) if results else True
        else:
            matched = all(results)
        if matched:
            return True
    return False


def evaluate_expression(expression: str, context: RuntimeContext) -> bool:
    """Evaluate a free-form expression.

    ``{{path}}`` tokens are resolved first and bound as values; the remaining
    text is evaluated by ``safe_eval`` with payload keys and the ``payload``,
    ``nodes``, ``loop``, ``system`` namespaces in scope.
    """
    namespace = context.eval_namespace()
    tree = context.value_tree()
    bound: dict[str, Any] = {}

    def _bind(match: re.Match) -> str:
        name = f"ref_{len(bound)}"
        value = resolve_reference(strip_braces(match.group(0)), tree)
        bound[name] = None if value is UNDEFINED else value
        return name

    source = TEMPLATE_TOKEN.sub(_bind, expression)
    namespace.update(bound)
    return bool(safe_eval(source, namespace))


def evaluate_condition(config: ConditionConfig, context: RuntimeContext) -> bool:
    if config.condition_groups:
        return evaluate_groups(config.condition_groups, context)
    if config.expression.strip():
        return evaluate_expression(config.expression, context)
    return True
