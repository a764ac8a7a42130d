"""Boolean branch conditions evaluated against an execution context."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Sequence, Union

from ..constants import MAX_EXPRESSION_LENGTH
from ..context import ROOTS, ExecutionContext, Segment, parse_path
from ..contracts import ConditionConfig, ConditionRule
from ..errors import ApiflowError, ConditionEvaluationError, TemplateResolutionError
from .evaluator import RestrictedExpression
from .templates import PLACEHOLDER, reference_problem

logger = logging.getLogger(__name__)

Condition = Union[str, ConditionConfig, ConditionRule]


def _unwrap(condition: Condition) -> Union[str, ConditionRule]:
    if isinstance(condition, ConditionConfig):
        return condition.rule if condition.rule is not None else condition.expression or ""
    return condition


def _rule_path(rule: ConditionRule) -> List[Segment]:
    field = rule.field.strip()
    match = PLACEHOLDER.fullmatch(field)
    try:
        return parse_path(match.group(1) if match else field)
    except TemplateResolutionError as exc:
        raise ConditionEvaluationError(exc.message) from None


class CompiledCondition:
    """A parsed condition expression.

    ``{{ ref }}`` placeholders are bound to generated names before parsing so
    references that are not Python identifiers (``steps.0``,
    ``steps.get-user``) can appear in a condition.
    """

    def __init__(self, expression: str, max_length: int = MAX_EXPRESSION_LENGTH) -> None:
        if len(expression) > max_length:
            raise ConditionEvaluationError(f"Expression exceeds {max_length} characters")
        self.expression = expression
        self._bound: Dict[str, List[Segment]] = {}
        source = PLACEHOLDER.sub(self._bind, expression)
        self._compiled = RestrictedExpression(
            source, ROOTS + tuple(self._bound), max_length=None
        )

    def _bind(self, match) -> str:
        name = f"__ref{len(self._bound)}"
        try:
            self._bound[name] = parse_path(match.group(1))
        except TemplateResolutionError as exc:
            raise ConditionEvaluationError(exc.message) from None
        return name

    def _expand(self, path: Sequence[Segment]) -> List[Segment]:
        root = path[0]
        if isinstance(root, str) and root in self._bound:
            return self._bound[root] + list(path[1:])
        return list(path)

    def references(self) -> List[List[Segment]]:
        return [self._expand(path) for path in self._compiled.references()]

    def evaluate(self, context: ExecutionContext) -> bool:
        result = self._compiled.evaluate(lambda path: context.lookup(self._expand(path)))
        return bool(result)


def _compare(operator: str, actual: Any, expected: Any) -> bool:
    if operator == "exists":
        return actual is not None
    if operator == "not_exists":
        return actual is None
    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        return actual is not None and expected in actual
    if actual is None:
        return False
    if operator == "greater_than":
        return actual > expected
    if operator == "less_than":
        return actual < expected
    if operator == "greater_or_equal":
        return actual >= expected
    if operator == "less_or_equal":
        return actual <= expected
    raise ConditionEvaluationError(f"Unsupported operator: {operator}")


class ConditionEvaluator:
    """Evaluate condition expressions and structured rules to a boolean."""

    def __init__(self, max_length: int = MAX_EXPRESSION_LENGTH) -> None:
        self.max_length = max_length

    def evaluate(self, condition: Condition, context: ExecutionContext) -> bool:
        condition = _unwrap(condition)
        if isinstance(condition, ConditionRule):
            result = self._evaluate_rule(condition, context)
        else:
            result = CompiledCondition(condition, self.max_length).evaluate(context)
        logger.debug(f"Condition {condition!r} evaluated to {result}")
        return result

    def _evaluate_rule(self, rule: ConditionRule, context: ExecutionContext) -> bool:
        path = _rule_path(rule)
        try:
            actual = context.lookup(path)
        except TemplateResolutionError as exc:
            if rule.operator not in ("exists", "not_exists"):
                raise ConditionEvaluationError(exc.message) from None
            actual = None
        try:
            return _compare(rule.operator, actual, rule.value)
        except TypeError as exc:
            raise ConditionEvaluationError(
                f"Cannot compare {rule.field} with {rule.value!r}: {exc}"
            ) from None

    def check(
        self, condition: Condition, earlier_steps: Sequence[Segment], has_previous: bool
    ) -> List[str]:
        """Return problems that would make ``condition`` fail at run time."""
        condition = _unwrap(condition)
        try:
            if isinstance(condition, ConditionRule):
                paths = [_rule_path(condition)]
            else:
                paths = CompiledCondition(condition, self.max_length).references()
        except ApiflowError as exc:
            return [exc.message]
        known = {str(s) for s in earlier_steps}
        problems = []
        for path in paths:
            problem = reference_problem(path, known, has_previous)
            if problem:
                problems.append(f"Condition reference '{'.'.join(map(str, path))}' {problem}")
        return problems


__all__ = ["ConditionEvaluator", "CompiledCondition"]
