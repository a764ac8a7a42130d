"""Restricted expression evaluation over the standard-library ``ast``.

Expressions are parsed in ``eval`` mode and walked node by node. Only the
node types handled below are accepted; anything else (attribute calls,
lambdas, comprehensions, f-strings, ...) is rejected before evaluation.
"""

from __future__ import annotations

import ast
import operator
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..constants import MAX_CONCAT_LENGTH, MAX_EXPRESSION_LENGTH, MAX_EXPRESSION_NODES
from ..context import Segment, walk
from ..errors import ApiflowError, ConditionEvaluationError, TemplateResolutionError

MISSING = object()

LITERAL_NAMES = {
    "true": True,
    "false": False,
    "null": None,
    "none": None,
    "True": True,
    "False": False,
    "None": None,
}

_COMPARE = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_ARITHMETIC = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

Resolver = Callable[[List[Segment]], Any]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _arithmetic(op: ast.operator, left: Any, right: Any) -> Any:
    """Apply ``op`` to numbers, or ``+`` to two strings or two lists of bounded size."""
    if _is_number(left) and _is_number(right):
        return _ARITHMETIC[type(op)](left, right)
    if isinstance(op, ast.Add) and (
        (isinstance(left, str) and isinstance(right, str))
        or (isinstance(left, list) and isinstance(right, list))
    ):
        if len(left) + len(right) > MAX_CONCAT_LENGTH:
            raise ValueError(f"result would exceed {MAX_CONCAT_LENGTH} items")
        return left + right
    raise TypeError(
        f"unsupported operand types for {type(op).__name__}: "
        f"{type(left).__name__} and {type(right).__name__}"
    )


def reference_path(node: ast.AST) -> Optional[List[Segment]]:
    """Return the path for ``a.b[0]["c"]`` style nodes, or ``None``."""

    if isinstance(node, ast.Name):
        return [node.id]
    if isinstance(node, ast.Attribute):
        base = reference_path(node.value)
        return base + [node.attr] if base is not None else None
    if isinstance(node, ast.Subscript):
        base = reference_path(node.value)
        key = literal_value(node.slice)
        if base is None or not isinstance(key, (str, int)) or isinstance(key, bool):
            return None
        return base + [key]
    return None


def literal_value(node: ast.AST) -> Any:
    """Extract a literal value from ``node`` or return ``MISSING``."""

    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name) and node.id in LITERAL_NAMES:
        return LITERAL_NAMES[node.id]
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
        operand = literal_value(node.operand)
        if isinstance(operand, (int, float)) and not isinstance(operand, bool):
            return -operand
        return MISSING
    if isinstance(node, (ast.Tuple, ast.List)):
        items = []
        for element in node.elts:
            value = literal_value(element)
            if value is MISSING:
                return MISSING
            items.append(value)
        return items
    return MISSING


def _exists(value: Any) -> bool:
    return value is not MISSING and value is not None


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    return item in container


def _length(value: Any) -> int:
    return len(value)


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "exists": _exists,
    "contains": _contains,
    "len": _length,
}


class RestrictedExpression:
    """A parsed expression that may only read through ``resolver``.

    ``roots`` lists the names that may start a reference (``None`` accepts any
    name). ``arithmetic`` enables ``+ - * / // %`` for transform computations.
    """

    def __init__(
        self,
        source: str,
        roots: Optional[tuple[str, ...]],
        *,
        arithmetic: bool = False,
        max_length: Optional[int] = MAX_EXPRESSION_LENGTH,
        error: type[ApiflowError] = ConditionEvaluationError,
    ) -> None:
        self.source = source
        self.roots = roots
        self.arithmetic = arithmetic
        self.error = error
        if not source or not source.strip():
            raise error("Expression is empty")
        if max_length is not None and len(source) > max_length:
            raise error(f"Expression exceeds {max_length} characters")
        try:
            tree = ast.parse(source.strip(), mode="eval")
        except SyntaxError as exc:
            raise error(f"Invalid expression syntax: {exc.msg}") from None
        if sum(1 for _ in ast.walk(tree)) > MAX_EXPRESSION_NODES:
            raise error(f"Expression exceeds {MAX_EXPRESSION_NODES} nodes")
        self._tree = tree
        self._check(tree.body)

    # ------------------------------------------------------------------
    def _check(self, node: ast.AST) -> None:
        if literal_value(node) is not MISSING:
            return
        if reference_path(node) is not None:
            root = reference_path(node)[0]
            if self.roots is not None and root not in self.roots:
                raise self.error(
                    f"Unknown name '{root}'; expected one of {', '.join(self.roots)}"
                )
            return
        if isinstance(node, ast.BoolOp):
            for value in node.values:
                self._check(value)
        elif isinstance(node, ast.UnaryOp) and isinstance(
            node.op, (ast.Not, ast.USub, ast.UAdd)
        ):
            self._check(node.operand)
        elif isinstance(node, ast.Compare):
            for op in node.ops:
                if type(op) not in _COMPARE:
                    raise self.error(f"Operator {type(op).__name__} is not allowed")
            self._check(node.left)
            for comparator in node.comparators:
                self._check(comparator)
        elif isinstance(node, ast.BinOp) and self.arithmetic:
            if type(node.op) not in _ARITHMETIC:
                raise self.error(f"Operator {type(node.op).__name__} is not allowed")
            self._check(node.left)
            self._check(node.right)
        elif isinstance(node, (ast.List, ast.Tuple)):
            for element in node.elts:
                self._check(element)
        elif isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
                raise self.error("Only exists(), len() and contains() may be called")
            if node.keywords:
                raise self.error("Keyword arguments are not allowed")
            for arg in node.args:
                self._check(arg)
        else:
            raise self.error(f"Unsupported expression element: {type(node).__name__}")

    def references(self) -> List[List[Segment]]:
        """Return every reference path read by the expression."""
        paths: List[List[Segment]] = []

        def visit(node: ast.AST) -> None:
            if literal_value(node) is not MISSING:
                return
            path = reference_path(node)
            if path is not None:
                paths.append(path)
                return
            children = node.args if isinstance(node, ast.Call) else ast.iter_child_nodes(node)
            for child in children:
                visit(child)

        visit(self._tree.body)
        return paths

    # ------------------------------------------------------------------
    def evaluate(self, resolver: Resolver) -> Any:
        try:
            return self._eval(self._tree.body, resolver)
        except ApiflowError as exc:
            if isinstance(exc, self.error):
                raise
            raise self.error(exc.message) from None
        except (TypeError, ValueError, ZeroDivisionError, ArithmeticError) as exc:
            raise self.error(f"Cannot evaluate '{self.source}': {exc}") from None

    def _eval(self, node: ast.AST, resolver: Resolver) -> Any:
        value = literal_value(node)
        if value is not MISSING:
            return value
        path = reference_path(node)
        if path is not None:
            return resolver(path)
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for operand in node.values:
                    result = self._eval(operand, resolver)
                    if not result:
                        return result
                return result
            result = False
            for operand in node.values:
                result = self._eval(operand, resolver)
                if result:
                    return result
            return result
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, resolver)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub):
                return -operand
            return +operand
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, resolver)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, resolver)
                if not _COMPARE[type(op)](left, right):
                    return False
                left = right
            return True
        if isinstance(node, ast.BinOp):
            return _arithmetic(
                node.op, self._eval(node.left, resolver), self._eval(node.right, resolver)
            )
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(element, resolver) for element in node.elts]
        if isinstance(node, ast.Call):
            name = node.func.id  # type: ignore[attr-defined]
            if name == "exists":
                return all(self._present(arg, resolver) for arg in node.args)
            args = [self._eval(arg, resolver) for arg in node.args]
            return FUNCTIONS[name](*args)
        raise self.error(f"Unsupported expression element: {type(node).__name__}")

    def _present(self, node: ast.AST, resolver: Resolver) -> bool:
        """Evaluate ``node`` for ``exists()``, treating a missing reference as absent."""
        try:
            return _exists(self._eval(node, resolver))
        except TemplateResolutionError:
            return False


def mapping_resolver(scope: Mapping[str, Any], fallback: Resolver) -> Resolver:
    """Resolve roots found in ``scope`` locally and everything else via ``fallback``."""
    def resolve(path: List[Segment]) -> Any:
        root = path[0]
        if isinstance(root, str) and root in scope:
            return walk(scope[root], path[1:], root)
        return fallback(path)

    return resolve


__all__ = [
    "RestrictedExpression",
    "reference_path",
    "literal_value",
    "mapping_resolver",
    "FUNCTIONS",
    "MISSING",
]
