"""Bounded data mapping for ``transform`` steps.

A transform starts from a copy of its ``source`` (or an empty object) and
applies its operations in order. Paths in ``field`` and ``from`` address the
output being built unless they start with a context root (``previous``,
``steps``, ``params``). Nothing here executes host-language code.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Sequence

from ..constants import MAX_EXPRESSION_LENGTH
from ..context import ROOTS, ExecutionContext, Segment, format_path, parse_path, walk
from ..contracts import TransformConfig, TransformOperation
from ..errors import ApiflowError, TemplateResolutionError, TransformError
from .evaluator import RestrictedExpression, mapping_resolver
from .templates import PLACEHOLDER

logger = logging.getLogger(__name__)

ITEM_ROOT = "item"


def _path(text: str) -> List[Segment]:
    match = PLACEHOLDER.fullmatch(text.strip())
    try:
        return parse_path(match.group(1) if match else text)
    except TemplateResolutionError as exc:
        raise TransformError(exc.message) from None


def _set_path(target: Any, segments: Sequence[Segment], value: Any) -> None:
    current = target
    for segment in segments[:-1]:
        if isinstance(current, dict):
            current = current.setdefault(str(segment), {})
        elif isinstance(current, list) and isinstance(segment, int) and segment < len(current):
            current = current[segment]
        else:
            raise TransformError(f"Cannot set '{format_path(segments)}'")
    last = segments[-1]
    if isinstance(current, dict):
        current[str(last)] = value
    elif isinstance(current, list) and isinstance(last, int) and last < len(current):
        current[last] = value
    else:
        raise TransformError(f"Cannot set '{format_path(segments)}'")


def _remove_path(target: Any, segments: Sequence[Segment]) -> Any:
    parent = walk(target, segments[:-1], "output") if len(segments) > 1 else target
    last = segments[-1]
    if isinstance(parent, dict) and str(last) in parent:
        return parent.pop(str(last))
    if isinstance(parent, list) and isinstance(last, int) and last < len(parent):
        return parent.pop(last)
    raise TransformError(f"Field '{format_path(segments)}' not found in output")


class TransformMapper:
    """Apply ``TransformConfig`` operations against an execution context."""

    def __init__(self, max_length: int = MAX_EXPRESSION_LENGTH) -> None:
        self.max_length = max_length

    def apply(self, config: TransformConfig, context: ExecutionContext) -> Any:
        output: Any = copy.deepcopy(config.source) if config.source is not None else {}
        for operation in config.operations:
            try:
                output = self._apply_one(operation, output, context)
            except TransformError:
                raise
            except ApiflowError as exc:
                raise TransformError(f"{operation.op} '{operation.field}': {exc.message}") from None
        logger.debug(f"Applied {len(config.operations)} transform operations")
        return output

    # ------------------------------------------------------------------
    def _read(self, text: str, output: Any, context: ExecutionContext) -> Any:
        segments = _path(text)
        if segments[0] in ROOTS:
            return context.lookup(segments)
        return walk(output, segments, "output")

    def _items(self, operation: TransformOperation, output: Any, context: ExecutionContext) -> list:
        items = self._read(operation.from_ or "", output, context)
        if not isinstance(items, list):
            raise TransformError(
                f"'{operation.op}' expects a list at '{operation.from_}', got {type(items).__name__}"
            )
        return items

    def _apply_one(
        self, operation: TransformOperation, output: Any, context: ExecutionContext
    ) -> Any:
        target = _path(operation.field)
        op = operation.op
        if op == "set":
            value = copy.deepcopy(operation.value)
        elif op == "copy":
            value = copy.deepcopy(self._read(operation.from_ or "", output, context))
        elif op == "rename":
            value = _remove_path(output, _path(operation.from_ or ""))
        elif op == "remove":
            _remove_path(output, target)
            return output
        elif op == "compute":
            value = self._compute(operation.expression or "", output, context)
        elif op == "map":
            value = [
                self._map_item(item, operation.fields or {})
                for item in self._items(operation, output, context)
            ]
        elif op == "filter":
            condition = self.compile(operation.where or "", (ITEM_ROOT,))
            value = [
                item
                for item in self._items(operation, output, context)
                if condition.evaluate(mapping_resolver({ITEM_ROOT: item}, context.lookup))
            ]
        else:
            value = self._aggregate(operation, self._items(operation, output, context))

        if not isinstance(output, dict):
            raise TransformError(
                f"Cannot assign '{operation.field}' on a {type(output).__name__} output"
            )
        _set_path(output, target, value)
        return output

    def _compute(self, expression: str, output: Any, context: ExecutionContext) -> Any:
        local = dict(output) if isinstance(output, Mapping) else {}
        local["output"] = output
        compiled = self.compile(expression, tuple(k for k in local if isinstance(k, str)))
        return compiled.evaluate(mapping_resolver(local, context.lookup))

    def _map_item(self, item: Any, fields: Dict[str, str]) -> Dict[str, Any]:
        mapped: Dict[str, Any] = {}
        for name, source in fields.items():
            segments = _path(source)
            if segments[0] == ITEM_ROOT:
                segments = segments[1:]
            mapped[name] = copy.deepcopy(walk(item, segments, ITEM_ROOT))
        return mapped

    def _aggregate(self, operation: TransformOperation, items: list) -> Any:
        if operation.function == "count":
            return len(items)
        key = _path(operation.key or "")
        if key[0] == ITEM_ROOT:
            key = key[1:]
        values = [walk(item, key, ITEM_ROOT) for item in items]
        numbers = [v for v in values if v is not None]
        try:
            if operation.function == "sum":
                return sum(numbers)
            if not numbers:
                return None
            if operation.function == "average":
                return sum(numbers) / len(numbers)
            if operation.function == "min":
                return min(numbers)
            return max(numbers)
        except TypeError as exc:
            raise TransformError(f"Cannot aggregate '{operation.key}': {exc}") from None

    # ------------------------------------------------------------------
    def compile(self, expression: str, extra_roots: tuple[str, ...] = ()) -> RestrictedExpression:
        return RestrictedExpression(
            expression,
            ROOTS + extra_roots,
            arithmetic=True,
            max_length=self.max_length,
            error=TransformError,
        )

    def check(self, config: TransformConfig) -> List[str]:
        """Return syntax problems in the operations' expressions and paths."""
        problems: List[str] = []
        for position, operation in enumerate(config.operations):
            try:
                _path(operation.field)
                for text in (operation.from_, operation.key):
                    if text:
                        _path(text)
                for source in (operation.fields or {}).values():
                    _path(source)
                if operation.where:
                    self.compile(operation.where, (ITEM_ROOT,))
                if operation.expression:
                    # output field names are only known at run time
                    RestrictedExpression(
                        operation.expression,
                        None,
                        arithmetic=True,
                        max_length=self.max_length,
                        error=TransformError,
                    )
            except ApiflowError as exc:
                problems.append(f"operation {position + 1} ({operation.op}): {exc.message}")
        return problems


__all__ = ["TransformMapper", "ITEM_ROOT"]
