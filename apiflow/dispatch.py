"""Workflow engine facade: start, cancel and inspect executions."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from functools import partial
from typing import Any, Dict, List, Optional

from .cancellation import CancellationController
from .config import ApiflowConfig, load_config
from .connections import ConfigConnectionResolver, ConnectionResolver
from .constants import DEFAULT_RETENTION_DAYS
from .context import Segment
from .contracts import WorkflowDefinition
from .errors import NotFoundError, ValidationError
from .execute import ExecutionOrchestrator, ProgressListener
from .persistence import (
    ExecutionLogEntry,
    ExecutionMetrics,
    ExecutionProgress,
    ExecutionRecord,
    ExecutionStatus,
    ExecutionStore,
    get_store,
)
from .persistence.models import utcnow
from .steps import ExecutorRegistry
from .utils.retry import RetryPolicy
from .workflows import EndpointCatalog, InMemoryWorkflowSource, WorkflowSource, check_endpoints

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Service responsible for running workflows and reporting on them."""

    def __init__(
        self,
        store: Optional[ExecutionStore] = None,
        workflows: Optional[WorkflowSource] = None,
        connections: Optional[ConnectionResolver] = None,
        endpoints: Optional[EndpointCatalog] = None,
        config: Optional[ApiflowConfig] = None,
        registry: Optional[ExecutorRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.config = config or load_config()
        self.store = store or get_store(config=self.config)
        self.workflows = workflows or InMemoryWorkflowSource()
        self.connections = connections or ConfigConnectionResolver(self.config)
        self.endpoints = endpoints
        self.cancellation = CancellationController()
        self.orchestrator = ExecutionOrchestrator(
            self.store,
            registry=registry,
            retry_policy=retry_policy or RetryPolicy.from_config(self.config.retry),
            cancellation=self.cancellation,
            config=self.config.engine,
        )
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Validation
    async def validate_workflow(self, workflow: WorkflowDefinition) -> None:
        """Raise ``ValidationError`` listing every problem found in ``workflow``."""
        problems = self.workflow_problems(workflow)
        if self.endpoints is not None:
            problems.extend(await check_endpoints(workflow, self.endpoints))
        if problems:
            raise ValidationError(f"Workflow {workflow.id} is invalid", problems)

    def workflow_problems(self, workflow: WorkflowDefinition) -> List[str]:
        problems: List[str] = []
        if not workflow.steps:
            problems.append("Workflow has no steps")
        seen: set[str] = set()
        earlier: List[Segment] = []
        has_previous = False
        for position, step in enumerate(workflow.steps):
            label = f"Step {position + 1} ({step.name})"
            if step.index != position:
                problems.append(
                    f"{label}: index {step.index} does not match its position {position}"
                )
            if step.name in seen:
                problems.append(f"{label}: duplicate step name")
            seen.add(step.name)
            if step.type == "api_call" and step.config.path and not workflow.connection_id:
                problems.append(f"{label}: relative path requires a workflow connection")
            executor = self.orchestrator.registry.for_type(step.type)
            problems.extend(
                f"{label}: {problem}"
                for problem in executor.validate(step, earlier, has_previous)
            )
            if step.type != "condition":
                earlier.extend([step.name, position])
                has_previous = True
        return problems

    # ------------------------------------------------------------------
    # Lifecycle
    async def start_execution(
        self,
        workflow_id: str,
        triggered_by: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Start the stored workflow ``workflow_id`` and return the execution id."""
        workflow = await self.workflows.get_workflow(workflow_id)
        return await self.start_workflow(workflow, triggered_by, parameters)

    async def start_workflow(
        self,
        workflow: WorkflowDefinition,
        triggered_by: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Validate ``workflow``, record a pending execution and start its task.

        Returns as soon as the task is scheduled.
        """
        await self.validate_workflow(workflow)
        client = await self.connections.get_client(workflow.connection_id)
        record = ExecutionRecord(
            id=str(uuid.uuid4()),
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            triggered_by=triggered_by,
            total_steps=len(workflow.steps),
            max_attempts=self.orchestrator.retry_policy.max_attempts,
            parameters=parameters or {},
        )
        await self.store.create_execution(record)
        token = self.cancellation.token(record.id)
        task = asyncio.create_task(
            self.orchestrator.run(record, workflow, client, token),
            name=f"execution-{record.id}",
        )
        self._tasks[record.id] = task
        task.add_done_callback(partial(self._task_done, record.id))
        logger.info(f"Started execution {record.id} for workflow {workflow.id}")
        return record.id

    def _task_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(execution_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Execution {execution_id} ended with an error: {exc!r}")

    async def cancel_execution(
        self, execution_id: str, canceled_by: Optional[str] = None
    ) -> bool:
        """Request cancellation; ``False`` when the execution is already terminal.

        Only executions running in this engine can be signalled.
        """
        record = await self.get_execution_details(execution_id)
        if record.is_terminal:
            return False
        if execution_id not in self.cancellation:
            logger.warning(f"Execution {execution_id} is not running in this engine")
            return False
        return self.cancellation.cancel(execution_id, canceled_by)

    async def wait_for_completion(
        self,
        execution_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = 0.1,
    ) -> ExecutionRecord:
        """Wait until the execution is terminal and return its final record."""
        task = self._tasks.get(execution_id)

        async def _wait() -> None:
            if task is not None:
                await asyncio.gather(asyncio.shield(task), return_exceptions=True)
                return
            while not (await self.get_execution_details(execution_id)).is_terminal:
                await asyncio.sleep(poll_interval)

        await asyncio.wait_for(_wait(), timeout)
        return await self.get_execution_details(execution_id)

    def add_progress_listener(self, listener: ProgressListener) -> None:
        self.orchestrator.add_progress_listener(listener)

    async def shutdown(self) -> None:
        """Cancel running executions and close connection clients."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Canceled {len(tasks)} running executions on shutdown")
        await self.connections.aclose()

    # ------------------------------------------------------------------
    # Queries
    async def get_execution_details(self, execution_id: str) -> ExecutionRecord:
        record = await self.store.get_execution(execution_id)
        if record is None:
            raise NotFoundError(f"Execution not found: {execution_id}")
        return record

    async def get_execution_status(self, execution_id: str) -> ExecutionProgress:
        return (await self.get_execution_details(execution_id)).progress()

    async def list_execution_history(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        triggered_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[ExecutionRecord]:
        """Executions, most recent first."""
        return await self.store.list_executions(
            workflow_id=workflow_id, status=status, triggered_by=triggered_by, limit=limit
        )

    async def get_execution_logs(self, execution_id: str) -> List[ExecutionLogEntry]:
        await self.get_execution_details(execution_id)
        return await self.store.list_logs(execution_id)

    async def get_execution_metrics(
        self, workflow_id: Optional[str] = None, triggered_by: Optional[str] = None
    ) -> ExecutionMetrics:
        records = await self.store.list_executions(
            workflow_id=workflow_id, triggered_by=triggered_by
        )
        return ExecutionMetrics.from_records(records)

    async def get_stuck_executions(
        self, timeout_minutes: Optional[int] = None
    ) -> List[ExecutionRecord]:
        """Running executions that started more than ``timeout_minutes`` ago."""
        minutes = timeout_minutes or self.config.engine.stuck_execution_minutes
        cutoff = utcnow() - timedelta(minutes=minutes)
        running = await self.store.list_executions(status=ExecutionStatus.RUNNING)
        return [r for r in running if r.started_at is not None and r.started_at < cutoff]

    async def cleanup_old_executions(
        self, retention_days: int = DEFAULT_RETENTION_DAYS
    ) -> int:
        """Delete terminal executions older than ``retention_days``; returns the count."""
        cutoff = utcnow() - timedelta(days=retention_days)
        deleted = await self.store.delete_executions_before(cutoff)
        logger.info(f"Deleted {deleted} executions created before {cutoff.isoformat()}")
        return deleted


__all__ = ["WorkflowEngine"]
