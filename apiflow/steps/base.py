"""Common interface for step executors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, List, Optional, Sequence

from ..cancellation import CancellationToken
from ..connections import ConnectionClient
from ..context import ExecutionContext, Segment
from ..contracts import StepType
from ..expressions import TemplateResolver


@dataclass
class StepRuntime:
    """Resources an executor may use while running one step attempt."""

    client: ConnectionClient
    token: Optional[CancellationToken] = None


@dataclass
class StepOutcome:
    """Result of a successful step attempt.

    ``passed`` is ``False`` only for a condition that evaluated false.
    ``stores_output`` controls whether later steps can reference ``output``.
    """

    output: Any = None
    passed: bool = True
    stores_output: bool = True


class StepExecutor(ABC):
    """Performs the unit of work for one step type."""

    step_type: ClassVar[StepType]

    def __init__(self, templates: Optional[TemplateResolver] = None) -> None:
        self.templates = templates or TemplateResolver()

    @abstractmethod
    def validate(
        self, step: Any, earlier_steps: Sequence[Segment], has_previous: bool
    ) -> List[str]:
        """Return configuration problems detectable before the execution starts."""

    def resolve(self, step: Any, context: ExecutionContext) -> Any:
        """Return the step's config with its templates resolved."""
        return step.config

    @abstractmethod
    async def execute(
        self, step: Any, config: Any, context: ExecutionContext, runtime: StepRuntime
    ) -> StepOutcome:
        """Run one attempt of ``step`` with an already resolved ``config``."""
