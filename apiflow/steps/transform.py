"""Executor for ``transform`` steps."""

from __future__ import annotations

from typing import List, Optional, Sequence

from ..context import ExecutionContext, Segment
from ..contracts import StepType, TransformConfig, TransformStep
from ..expressions import TemplateResolver, TransformMapper
from .base import StepExecutor, StepOutcome, StepRuntime


class TransformExecutor(StepExecutor):
    step_type = StepType.TRANSFORM

    def __init__(
        self,
        templates: Optional[TemplateResolver] = None,
        mapper: Optional[TransformMapper] = None,
    ) -> None:
        super().__init__(templates)
        self.mapper = mapper or TransformMapper()

    def validate(
        self, step: TransformStep, earlier_steps: Sequence[Segment], has_previous: bool
    ) -> List[str]:
        config = step.config
        problems = self.templates.check(config.source, earlier_steps, has_previous)
        for operation in config.operations:
            problems.extend(self.templates.check(operation.value, earlier_steps, has_previous))
        problems.extend(self.mapper.check(config))
        return problems

    def resolve(self, step: TransformStep, context: ExecutionContext) -> TransformConfig:
        config = step.config
        operations = [
            operation.model_copy(update={"value": self.templates.resolve(operation.value, context)})
            for operation in config.operations
        ]
        return config.model_copy(
            update={
                "source": self.templates.resolve(config.source, context),
                "operations": operations,
            }
        )

    async def execute(
        self,
        step: TransformStep,
        config: TransformConfig,
        context: ExecutionContext,
        runtime: StepRuntime,
    ) -> StepOutcome:
        return StepOutcome(output=self.mapper.apply(config, context))
