"""
Restricted expression evaluator for workflow step conditions.

Expressions use Python syntax limited to literals, names from the
evaluation context, field access (``s1.data.value`` or ``s1["data"]``),
arithmetic, comparisons, boolean logic, conditional expressions and calls
to a fixed set of helper functions:

- ``is_null(v)``: v is None
- ``is_error(v)``: v is an exception or an object carrying an ``error`` field
- ``get(obj, "a.b.0", default=None)``: dot-path lookup that never fails
- ``has(obj, "a.b")``: whether a dot path exists
- ``len``, ``str``, ``int``, ``float``, ``bool``, ``abs``, ``min``, ``max``, ``round``, ``lower``, ``upper``

``true``, ``false`` and ``null`` are accepted as aliases of True, False and None.
Nothing else (attribute access to private names, imports, lambdas,
comprehensions, arbitrary calls) is evaluated.
"""

import ast
import logging
import operator
from typing import Any, Callable, Dict, Optional

from sophia.utils.error_handling import ExpressionError

logger = logging.getLogger(__name__)


MAX_EXPONENT = 10000
MAX_DEPTH = 100
MAX_SEQUENCE_LENGTH = 10000

CONSTANTS = {"true": True, "false": False, "null": None, "True": True, "False": False, "None": None}

BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

UNARY_OPERATORS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

ALLOWED_NODES = (
    ast.Expression, ast.Constant, ast.Name, ast.Load,
    ast.BoolOp, ast.And, ast.Or, ast.UnaryOp, ast.BinOp, ast.Compare,
    ast.Subscript, ast.Attribute, ast.Call, ast.IfExp,
    ast.List, ast.Tuple, ast.Dict,
) + tuple(BINARY_OPERATORS) + tuple(UNARY_OPERATORS) + tuple(COMPARISONS)


def resolve_path(value: Any, path: str) -> Any:
    """
    Follow a dot-separated path through dicts and lists.

    Args:
        value: Root object
        path: Path such as "data.items.0.name"; empty returns the root

    Returns:
        The value at the path

    Raises:
        LookupError: If any segment does not exist
    """
    if not path:
        return value

    current = value
    walked = []
    for segment in path.split("."):
        walked.append(segment)
        if isinstance(current, dict):
            if segment not in current:
                raise LookupError(f"'{'.'.join(walked)}' not found")
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                raise LookupError(f"'{'.'.join(walked)}' is not a valid index")
        else:
            raise LookupError(f"'{'.'.join(walked[:-1]) or '<root>'}' has no field '{segment}'")
    return current


def _get(obj: Any, path: str, default: Any = None) -> Any:
    try:
        return resolve_path(obj, str(path))
    except LookupError:
        return default


def _has(obj: Any, path: str) -> bool:
    try:
        resolve_path(obj, str(path))
        return True
    except LookupError:
        return False


def _is_error(value: Any) -> bool:
    return isinstance(value, Exception) or (isinstance(value, dict) and value.get("error") is not None)


DEFAULT_FUNCTIONS: Dict[str, Callable] = {
    "is_null": lambda value: value is None,
    "is_error": _is_error,
    "get": _get,
    "has": _has,
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "lower": lambda value: str(value).lower(),
    "upper": lambda value: str(value).upper(),
}


def _check_size(op: ast.operator, left: Any, right: Any) -> None:
    """Refuse powers and sequence repetitions whose result would be huge."""
    if isinstance(op, ast.Pow) and isinstance(right, (int, float)):
        if abs(right) > MAX_EXPONENT:
            raise ExpressionError(f"Exponent {right} is too large", component="workflow")
        if isinstance(left, int) and right > 0 and left.bit_length() * right > MAX_EXPONENT * 16:
            raise ExpressionError("Result of the power is too large", component="workflow")

    if isinstance(op, ast.Mult):
        for sequence, count in ((left, right), (right, left)):
            if isinstance(sequence, (str, list, tuple)) and isinstance(count, int):
                if len(sequence) * count > MAX_SEQUENCE_LENGTH:
                    raise ExpressionError(
                        f"Repeated sequence would exceed {MAX_SEQUENCE_LENGTH} items", component="workflow"
                    )


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, dict):
        if key not in container:
            raise ExpressionError(f"Key {key!r} not found", component="workflow")
        return container[key]
    if isinstance(container, (list, tuple, str)) and isinstance(key, int) and not isinstance(key, bool):
        try:
            return container[key]
        except IndexError:
            raise ExpressionError(f"Index {key} out of range", component="workflow")
    raise ExpressionError(f"Cannot access {key!r} on a value of type {type(container).__name__}", component="workflow")


class ExpressionEvaluator:
    """
    Parses and evaluates condition expressions against a context of names.
    """

    def __init__(self, functions: Optional[Dict[str, Callable]] = None):
        self.functions = {**DEFAULT_FUNCTIONS, **(functions or {})}
        self._compiled: Dict[str, ast.Expression] = {}

    def compile(self, expression: str) -> ast.Expression:
        """
        Parse an expression and check it only uses supported syntax.

        Raises:
            ExpressionError: On syntax errors or unsupported constructs
        """
        if expression in self._compiled:
            return self._compiled[expression]

        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as e:
            raise ExpressionError(f"Invalid expression '{expression}': {e.msg}", component="workflow")
        except (RecursionError, MemoryError):
            raise ExpressionError("Expression is too deeply nested", component="workflow")

        pending = [(tree, 0)]
        while pending:
            node, depth = pending.pop()
            if depth > MAX_DEPTH:
                raise ExpressionError(f"Expression nests deeper than {MAX_DEPTH} levels", component="workflow")
            if not isinstance(node, ALLOWED_NODES):
                raise ExpressionError(
                    f"Unsupported syntax in expression '{expression}': {type(node).__name__}",
                    component="workflow"
                )
            if isinstance(node, ast.Dict) and None in node.keys:
                raise ExpressionError("Dictionary unpacking is not supported", component="workflow")
            if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                raise ExpressionError(f"Access to private field '{node.attr}' is not allowed", component="workflow")
            if isinstance(node, ast.Call):
                if not isinstance(node.func, ast.Name) or node.func.id not in self.functions:
                    raise ExpressionError("Only helper functions can be called in expressions", component="workflow")
            pending.extend((child, depth + 1) for child in ast.iter_child_nodes(node))

        self._compiled[expression] = tree
        return tree

    def evaluate(self, expression: str, context: Dict[str, Any]) -> Any:
        """
        Evaluate an expression.

        Args:
            expression: Expression source
            context: Names visible to the expression

        Returns:
            The expression's value

        Raises:
            ExpressionError: If the expression is invalid or fails to evaluate
        """
        tree = self.compile(expression)
        try:
            return self._eval(tree.body, context)
        except ExpressionError:
            raise
        except (ArithmeticError, TypeError, ValueError, LookupError, RecursionError, MemoryError) as e:
            raise ExpressionError(f"Error evaluating '{expression}': {e}", component="workflow") from e

    def _eval(self, node: ast.AST, names: Dict[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in names:
                return names[node.id]
            if node.id in CONSTANTS:
                return CONSTANTS[node.id]
            raise ExpressionError(f"Unknown name '{node.id}'", component="workflow")

        if isinstance(node, ast.BoolOp):
            is_and = isinstance(node.op, ast.And)
            value: Any = is_and
            for operand in node.values:
                value = self._eval(operand, names)
                if bool(value) != is_and:
                    return value
            return value

        if isinstance(node, ast.UnaryOp):
            return UNARY_OPERATORS[type(node.op)](self._eval(node.operand, names))

        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, names)
            right = self._eval(node.right, names)
            _check_size(node.op, left, right)
            return BINARY_OPERATORS[type(node.op)](left, right)

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, names)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, names)
                if not COMPARISONS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.Subscript):
            return _lookup(self._eval(node.value, names), self._eval(node.slice, names))

        if isinstance(node, ast.Attribute):
            return _lookup(self._eval(node.value, names), node.attr)

        if isinstance(node, ast.Call):
            if node.keywords:
                raise ExpressionError("Keyword arguments are not supported", component="workflow")
            function = self.functions[node.func.id]
            return function(*[self._eval(arg, names) for arg in node.args])

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, names):
                return self._eval(node.body, names)
            return self._eval(node.orelse, names)

        if isinstance(node, ast.List):
            return [self._eval(element, names) for element in node.elts]

        if isinstance(node, ast.Tuple):
            return tuple(self._eval(element, names) for element in node.elts)

        if isinstance(node, ast.Dict):
            return {
                self._eval(key, names): self._eval(value, names)
                for key, value in zip(node.keys, node.values)
            }

        raise ExpressionError(f"Unsupported syntax: {type(node).__name__}", component="workflow")
