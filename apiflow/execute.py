"""Step loop that drives a single workflow execution to a terminal state."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

from .cancellation import CancellationController, CancellationToken
from .config import EngineConfig
from .connections import ConnectionClient
from .context import ExecutionContext
from .contracts import WorkflowDefinition
from .errors import ApiflowError, ExecutionCanceled, ExecutionTimeoutError
from .persistence import (
    ExecutionLogEntry,
    ExecutionProgress,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionStore,
    StepError,
    StepResult,
    StepStatus,
)
from .persistence.models import utcnow
from .steps import ExecutorRegistry, StepOutcome, StepRuntime, default_registry
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ExecutionProgress], Union[None, Awaitable[None]]]


def step_error(exc: BaseException, client: Optional[ConnectionClient] = None) -> StepError:
    """Convert an exception into the persisted error shape, without secrets."""
    message = exc.message if isinstance(exc, ApiflowError) else str(exc)
    if client is not None:
        message = client.redact(message)
    return StepError(
        type=exc.__class__.__name__,
        message=message,
        status_code=getattr(exc, "status_code", None),
        retryable=bool(getattr(exc, "retryable", False)),
    )


class ExecutionOrchestrator:
    """Runs workflow executions one step at a time.

    Each execution is owned by the task running :meth:`run`; that task is the
    only writer of its record and publishes a fresh copy after every change.
    """

    def __init__(
        self,
        store: ExecutionStore,
        registry: Optional[ExecutorRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cancellation: Optional[CancellationController] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.registry = registry or default_registry(self.config)
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancellation = cancellation or CancellationController()
        self.listeners: List[ProgressListener] = []

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self.listeners.append(listener)

    async def run(
        self,
        record: ExecutionRecord,
        workflow: WorkflowDefinition,
        client: ConnectionClient,
        token: Optional[CancellationToken] = None,
    ) -> ExecutionRecord:
        """Execute ``workflow`` for the already created ``record``."""
        run = _ExecutionRun(
            self, record, workflow, client, token or self.cancellation.token(record.id)
        )
        try:
            return await run.execute()
        finally:
            self.cancellation.discard(record.id)


class _ExecutionRun:
    """State of one execution while its step loop is running."""

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        record: ExecutionRecord,
        workflow: WorkflowDefinition,
        client: ConnectionClient,
        token: CancellationToken,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = orchestrator.store
        self.retry_policy = orchestrator.retry_policy
        self.record = record
        self.workflow = workflow
        self.client = client
        self.token = token
        self.context = ExecutionContext(record.parameters)
        self.runtime = StepRuntime(client=client, token=token)
        self.retries_used = 0
        self.deadline: Optional[float] = None

    # ------------------------------------------------------------------
    async def _publish(self, **changes: Any) -> bool:
        self.record = self.record.model_copy(update=changes)
        saved = await self.store.save_execution(self.record)
        if not saved:
            logger.warning(f"Execution {self.record.id} was not updated; it is already terminal")
        return saved

    async def _log(
        self,
        message: str,
        level: str = "INFO",
        step: Any = None,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        logger.log(logging.getLevelName(level), f"[{self.record.id}] {message}")
        await self.store.append_log(
            ExecutionLogEntry(
                execution_id=self.record.id,
                level=level,
                message=message,
                step_index=step.index if step is not None else None,
                step_name=step.name if step is not None else None,
                data=data,
            )
        )

    async def _notify(self) -> None:
        progress = self.record.progress()
        for listener in self.orchestrator.listeners:
            try:
                result = listener(progress)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Progress listener failed for execution {self.record.id}")

    def _remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - asyncio.get_running_loop().time())

    def _interruption(self) -> Optional[ApiflowError]:
        if self.token.is_canceled:
            return ExecutionCanceled(f"Execution {self.record.id} was canceled")
        remaining = self._remaining()
        if remaining is not None and remaining <= 0:
            return self._timeout_error()
        return None

    def _timeout_error(self) -> ExecutionTimeoutError:
        return ExecutionTimeoutError(
            f"Execution exceeded its timeout of {self._timeout_ms()} ms"
        )

    def _timeout_ms(self) -> Optional[int]:
        return self.workflow.timeout_ms or self.orchestrator.config.default_timeout_ms

    async def _race(self, awaitable: Awaitable[Any]) -> Any:
        """Await ``awaitable`` unless cancellation or the deadline comes first.

        The losing work is cancelled and awaited before the interruption is
        raised, so an aborted HTTP request is closed before anything else runs.
        """
        work = asyncio.ensure_future(awaitable)
        signal = asyncio.ensure_future(self.token.wait())
        try:
            done, _ = await asyncio.wait(
                {work, signal},
                timeout=self._remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            signal.cancel()
            raise
        signal.cancel()
        if work in done:
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        if self.token.is_canceled:
            raise ExecutionCanceled(f"Execution {self.record.id} was canceled")
        raise self._timeout_error()

    # ------------------------------------------------------------------
    async def execute(self) -> ExecutionRecord:
        timeout_ms = self._timeout_ms()
        if timeout_ms:
            self.deadline = asyncio.get_running_loop().time() + timeout_ms / 1000
        await self._publish(
            status=ExecutionStatus.RUNNING,
            started_at=utcnow(),
            total_steps=len(self.workflow.steps),
            max_attempts=self.retry_policy.max_attempts,
        )
        await self._log(
            f"Started workflow {self.workflow.name}",
            data={"total_steps": len(self.workflow.steps)},
        )
        try:
            return await self._step_loop()
        except (ExecutionCanceled, ExecutionTimeoutError) as exc:
            return await self._interrupted(exc)
        except asyncio.CancelledError:
            await self._finish(
                ExecutionStatus.CANCELED,
                metadata={"canceled_by": "system", "reason": "engine shutdown"},
            )
            raise
        except Exception as exc:
            logger.exception(f"Execution {self.record.id} crashed")
            await self._finish(ExecutionStatus.FAILED, error=step_error(exc, self.client))
            raise

    async def _step_loop(self) -> ExecutionRecord:
        steps = self.workflow.steps
        for position, step in enumerate(steps):
            interruption = self._interruption()
            if interruption is not None:
                raise interruption

            await self._publish(current_step_index=position)
            result, outcome = await self._run_step(step)
            await self._publish(step_results=[*self.record.step_results, result])
            await self._notify()

            if result.status == StepStatus.FAILED:
                await self._log(
                    f"Step {step.display_number} ({step.name}) failed: {result.error.message}",
                    level="ERROR",
                    step=step,
                )
                return await self._finish(ExecutionStatus.FAILED, error=result.error)

            if outcome is not None and not outcome.passed:
                return await self._condition_failed(position)

            if outcome is not None and outcome.stores_output:
                self.context.set_output(step.index, step.name, outcome.output)
            await self._log(
                f"Step {step.display_number} ({step.name}) completed",
                step=step,
                data={"attempts": result.attempts},
            )
        return await self._finish(ExecutionStatus.COMPLETED)

    async def _run_step(self, step: Any) -> tuple[StepResult, Optional[StepOutcome]]:
        executor = self.orchestrator.registry.for_type(step.type)
        started_at = utcnow()
        attempt = 0
        await self._log(f"Step {step.display_number} ({step.name}) started", step=step)
        while True:
            attempt += 1
            await self._publish(attempt_count=self.record.attempt_count + 1)
            try:
                config = executor.resolve(step, self.context)
                outcome = await self._race(
                    executor.execute(step, config, self.context, self.runtime)
                )
            except (ExecutionCanceled, ExecutionTimeoutError):
                raise
            except ApiflowError as exc:
                error: BaseException = exc
            except Exception as exc:
                logger.exception(f"Step {step.name} raised an unexpected error")
                error = exc
            else:
                status = StepStatus.SUCCESS if outcome.passed else StepStatus.CONDITION_FAILED
                return (
                    StepResult(
                        step_index=step.index,
                        name=step.name,
                        type=step.type,
                        status=status,
                        started_at=started_at,
                        finished_at=utcnow(),
                        attempts=attempt,
                        output=outcome.output,
                    ),
                    outcome,
                )

            decision = self.retry_policy.should_retry(
                error, attempt, retries_used=self.retries_used
            )
            if not decision.retry:
                return (
                    StepResult(
                        step_index=step.index,
                        name=step.name,
                        type=step.type,
                        status=StepStatus.FAILED,
                        started_at=started_at,
                        finished_at=utcnow(),
                        attempts=attempt,
                        error=step_error(error, self.client),
                    ),
                    None,
                )
            self.retries_used += 1
            await self._log(
                f"Retrying step {step.display_number} ({step.name}) in "
                f"{decision.backoff_ms:.0f} ms after attempt {attempt}",
                level="WARNING",
                step=step,
                data={"error": step_error(error, self.client).model_dump()},
            )
            await self._race(asyncio.sleep(decision.backoff_ms / 1000))

    async def _condition_failed(self, position: int) -> ExecutionRecord:
        step = self.workflow.steps[position]
        skipped = [
            StepResult(
                step_index=later.index,
                name=later.name,
                type=later.type,
                status=StepStatus.SKIPPED,
            )
            for later in self.workflow.steps[position + 1 :]
        ]
        await self._publish(step_results=[*self.record.step_results, *skipped])
        await self._log(
            f"Condition {step.display_number} ({step.name}) was false; "
            f"skipping {len(skipped)} remaining steps",
            step=step,
        )
        if self.orchestrator.config.condition_failure == "fail":
            return await self._finish(
                ExecutionStatus.FAILED,
                error=StepError(
                    type="ConditionFailed",
                    message=f"Condition step {step.display_number} ({step.name}) evaluated to false",
                ),
            )
        return await self._finish(ExecutionStatus.COMPLETED)

    async def _interrupted(self, exc: ApiflowError) -> ExecutionRecord:
        if isinstance(exc, ExecutionCanceled):
            metadata = {
                "canceled_by": self.token.canceled_by,
                "canceled_at": (self.token.requested_at or utcnow()).isoformat(),
            }
            return await self._finish(ExecutionStatus.CANCELED, metadata=metadata)
        return await self._finish(ExecutionStatus.FAILED, error=step_error(exc))

    async def _finish(
        self,
        status: ExecutionStatus,
        error: Optional[StepError] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ExecutionRecord:
        changes: dict[str, Any] = {"status": status, "completed_at": utcnow(), "error": error}
        if metadata:
            changes["metadata"] = {**self.record.metadata, **metadata}
        if await self._publish(**changes):
            level = "INFO" if status == ExecutionStatus.COMPLETED else "WARNING"
            await self._log(f"Execution {status.value}", level=level)
            await self._notify()
        return self.record


__all__ = ["ExecutionOrchestrator", "ProgressListener", "step_error"]
