"""Executor for ``condition`` steps."""

from __future__ import annotations

from typing import List, Optional, Sequence

from ..context import ExecutionContext, Segment
from ..contracts import ConditionConfig, ConditionStep, StepType
from ..expressions import ConditionEvaluator, TemplateResolver
from .base import StepExecutor, StepOutcome, StepRuntime


class ConditionExecutor(StepExecutor):
    """Evaluates the branch; the boolean is never exposed to later templates."""

    step_type = StepType.CONDITION

    def __init__(
        self,
        templates: Optional[TemplateResolver] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        super().__init__(templates)
        self.evaluator = evaluator or ConditionEvaluator()

    def validate(
        self, step: ConditionStep, earlier_steps: Sequence[Segment], has_previous: bool
    ) -> List[str]:
        return self.evaluator.check(step.config, earlier_steps, has_previous)

    async def execute(
        self,
        step: ConditionStep,
        config: ConditionConfig,
        context: ExecutionContext,
        runtime: StepRuntime,
    ) -> StepOutcome:
        result = self.evaluator.evaluate(config, context)
        return StepOutcome(output=result, passed=result, stores_output=False)
