"""
Safe expression evaluation for branch conditions and template logic.

Expressions are parsed with ``ast`` and walked by a visitor that only knows
an explicit whitelist of node types, operators and functions. Nothing is
ever handed to ``eval``.

Workflow expressions are authored in a JavaScript-flavoured syntax, so the
evaluator also accepts ``&&``, ``||``, ``!``, ``===``, ``!==`` and the
literals ``true``, ``false``, ``null``, and lets ``a.b`` read the key ``b``
of a mapping.
"""

import ast
import operator
import re
from collections.abc import Mapping
from typing import Any


class SafeEvalError(Exception):
    """Base exception for safe evaluation errors."""

    def __init__(self, message: str, node: ast.AST | None = None, context: str = ""):
        self.message = message
        self.node = node
        self.context = context
        self.line = getattr(node, "lineno", None) if node else None
        self.col = getattr(node, "col_offset", None) if node else None
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        parts = [self.message]
        if self.col is not None:
            parts.append(f" at column {self.col}")
        if self.context:
            parts.append(f" ({self.context})")
        return "".join(parts)


class SafeEvalSyntaxError(SafeEvalError):
    """The expression could not be parsed."""


class SafeEvalSecurityError(SafeEvalError):
    """Raised when unsafe operations are detected."""


class SafeEvalNameError(SafeEvalError):
    """Raised when a name is not found in context."""


class SafeEvalTypeError(SafeEvalError):
    """Raised when an operation is invalid for the given types."""


class SafeEvalAttributeError(SafeEvalError):
    """Raised when accessing a forbidden or missing attribute."""


SAFE_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

SAFE_FUNCTIONS = {
    "len": len,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "list": list,
    "min": min,
    "max": max,
    "sum": sum,
    "abs": abs,
    "round": round,
    "all": all,
    "any": any,
}

SAFE_METHODS = frozenset(
    {
        "get",
        "keys",
        "values",
        "items",
        "lower",
        "upper",
        "strip",
        "split",
        "startswith",
        "endswith",
        "includes",
    }
)

JS_LITERALS = {"true": True, "false": False, "null": None, "undefined": None}

# Longest tokens first so "===" is not read as "==" followed by "=".
_JS_TOKENS = [
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]
_STRING_LITERAL = re.compile(r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\"")


def normalize_expression(expr: str) -> str:
    """Rewrite JavaScript-style operators into Python, leaving string literals alone."""
    pieces: list[str] = []
    last = 0
    for match in _STRING_LITERAL.finditer(expr):
        pieces.append(_rewrite_operators(expr[last : match.start()]))
        pieces.append(match.group(0))
        last = match.end()
    pieces.append(_rewrite_operators(expr[last:]))
    return "".join(pieces).strip()


def _rewrite_operators(fragment: str) -> str:
    for pattern, replacement in _JS_TOKENS:
        fragment = pattern.sub(replacement, fragment)
    return fragment


class SafeEvalVisitor(ast.NodeVisitor):
    def __init__(self, context: dict[str, Any]):
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        method = "visit_" + node.__class__.__name__
        visitor = getattr(self, method, self.generic_visit)
        return visitor(node)

    def generic_visit(self, node: ast.AST):
        raise SafeEvalSecurityError(f"Use of {node.__class__.__name__} is not allowed", node=node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Dict(self, node: ast.Dict) -> dict:
        return {
            self.visit(k): self.visit(v)
            for k, v in zip(node.keys, node.values, strict=False)
            if k is not None
        }

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op_func = SAFE_OPERATORS.get(type(node.op))
        if op_func is None:
            raise SafeEvalSecurityError(
                f"Operator {type(node.op).__name__} is not allowed", node=node
            )
        return op_func(self.visit(node.left), self.visit(node.right))

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op_func = SAFE_OPERATORS.get(type(node.op))
        if op_func is None:
            raise SafeEvalSecurityError(
                f"Operator {type(node.op).__name__} is not allowed", node=node
            )
        return op_func(self.visit(node.operand))

    def visit_Compare(self, node: ast.Compare) -> Any:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=False):
            op_func = SAFE_OPERATORS.get(type(op))
            if op_func is None:
                raise SafeEvalSecurityError(
                    f"Operator {type(op).__name__} is not allowed", node=node
                )
            right = self.visit(comparator)
            if not op_func(left, right):
                return False
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        # Short-circuit like Python so "x and x.y" is safe when x is missing.
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        if isinstance(node.op, ast.Or):
            result = False
            for value in node.values:
                result = self.visit(value)
                if result:
                    return result
            return result
        raise SafeEvalSecurityError(
            f"Boolean operator {type(node.op).__name__} is not allowed", node=node
        )

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        if self.visit(node.test):
            return self.visit(node.body)
        return self.visit(node.orelse)

    def visit_Name(self, node: ast.Name) -> Any:
        if not isinstance(node.ctx, ast.Load):
            raise SafeEvalSecurityError("Only reading variables is allowed", node=node)
        if node.id in self.context:
            return self.context[node.id]
        if node.id in JS_LITERALS:
            return JS_LITERALS[node.id]
        raise SafeEvalNameError(f"Name '{node.id}' is not defined", node=node)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        val = self.visit(node.value)
        idx = self.visit(node.slice)
        return val[idx]

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise SafeEvalSecurityError(
                f"Access to private attribute '{node.attr}' is not allowed",
                node=node,
            )
        val = self.visit(node.value)
        if isinstance(val, Mapping):
            if node.attr in val:
                return val[node.attr]
            # Missing keys read as null, matching optional chaining in the editor.
            if not hasattr(val, node.attr):
                return None
        if node.attr == "length" and isinstance(val, (str, list, tuple)):
            return len(val)
        if node.attr == "includes" and isinstance(val, (str, list, tuple)):
            return val.__contains__
        try:
            return getattr(val, node.attr)
        except AttributeError:
            pass
        raise SafeEvalAttributeError(f"Object has no attribute '{node.attr}'", node=node)

    def visit_Call(self, node: ast.Call) -> Any:
        is_safe = isinstance(node.func, ast.Name) and node.func.id in SAFE_FUNCTIONS
        if isinstance(node.func, ast.Attribute) and node.func.attr in SAFE_METHODS:
            is_safe = True
        if not is_safe:
            func_name = (
                node.func.id
                if isinstance(node.func, ast.Name)
                else getattr(node.func, "attr", "<unknown>")
            )
            raise SafeEvalSecurityError(
                f"Call to function/method '{func_name}' is not allowed",
                node=node,
                context=f"allowed functions: {', '.join(sorted(SAFE_FUNCTIONS))}",
            )
        func = self.visit(node.func)
        args = [self.visit(arg) for arg in node.args]
        keywords = {kw.arg: self.visit(kw.value) for kw in node.keywords}
        return func(*args, **keywords)


def safe_eval(expr: str, context: dict[str, Any] | None = None) -> Any:
    """
    Safely evaluate an expression string.

    Args:
        expr: The expression to evaluate (Python or JavaScript-style operators).
        context: Variables available to the expression.

    Returns:
        The result of the evaluation.

    Raises:
        SafeEvalSyntaxError: If the expression cannot be parsed.
        SafeEvalSecurityError: If unsafe operations are used.
        SafeEvalNameError: If a variable is not in context.
        SafeEvalTypeError: If an operation fails for the operand types.

    Example:
        >>> safe_eval("amount > 5000", {"amount": 8500})
        True
        >>> safe_eval("payload.status === 'paid' && amount > 0",
        ...           {"payload": {"status": "paid"}, "amount": 3})
        True
    """
    full_context = dict(SAFE_FUNCTIONS)
    full_context.update(context or {})

    source = normalize_expression(expr)
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise SafeEvalSyntaxError(
            f"Invalid syntax in expression '{expr}'", context=str(e.msg)
        ) from e

    try:
        return SafeEvalVisitor(full_context).visit(tree)
    except SafeEvalError:
        raise
    except (
        NameError,
        AttributeError,
        ValueError,
        TypeError,
        KeyError,
        IndexError,
        ZeroDivisionError,
    ) as e:
        raise SafeEvalTypeError(f"Evaluation failed: {e}", context=expr) from e


__all__ = [
    "safe_eval",
    "normalize_expression",
    "SafeEvalError",
    "SafeEvalSyntaxError",
    "SafeEvalSecurityError",
    "SafeEvalNameError",
    "SafeEvalTypeError",
    "SafeEvalAttributeError",
]
