"""Step executors keyed by step type."""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from ..config import EngineConfig
from ..contracts import StepType
from ..expressions import ConditionEvaluator, TemplateResolver, TransformMapper
from .api_call import ApiCallExecutor
from .base import StepExecutor, StepOutcome, StepRuntime
from .condition import ConditionExecutor
from .transform import TransformExecutor


class ExecutorRegistry:
    """Closed mapping from every ``StepType`` to exactly one executor."""

    def __init__(self, executors: Iterable[StepExecutor]) -> None:
        self._executors: Dict[StepType, StepExecutor] = {}
        for executor in executors:
            if executor.step_type in self._executors:
                raise ValueError(f"Duplicate executor for step type {executor.step_type.value}")
            self._executors[executor.step_type] = executor
        missing = [t.value for t in StepType if t not in self._executors]
        if missing:
            raise ValueError(f"No executor registered for step types: {', '.join(missing)}")

    def for_type(self, step_type: str) -> StepExecutor:
        return self._executors[StepType(step_type)]


def default_registry(config: Optional[EngineConfig] = None) -> ExecutorRegistry:
    config = config or EngineConfig()
    templates = TemplateResolver()
    return ExecutorRegistry(
        [
            ApiCallExecutor(templates),
            TransformExecutor(templates, TransformMapper(config.max_expression_length)),
            ConditionExecutor(templates, ConditionEvaluator(config.max_expression_length)),
        ]
    )


__all__ = [
    "ApiCallExecutor",
    "ConditionExecutor",
    "ExecutorRegistry",
    "StepExecutor",
    "StepOutcome",
    "StepRuntime",
    "TransformExecutor",
    "default_registry",
]
