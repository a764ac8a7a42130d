"""Data models for persisted execution state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELED}
)


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CONDITION_FAILED = "condition_failed"


class StepError(BaseModel):
    """Error recorded on a failed step or execution. Never holds secrets."""

    type: str
    message: str
    status_code: Optional[int] = None
    retryable: bool = False


class StepResult(BaseModel):
    """Outcome of one attempted or skipped step."""

    step_index: int
    name: str
    type: str
    status: StepStatus
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    attempts: int = 0
    output: Any = None
    error: Optional[StepError] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds() * 1000


class ExecutionProgress(BaseModel):
    """Snapshot of an execution's progress, derived from its record."""

    execution_id: str
    status: ExecutionStatus
    current_step: int
    total_steps: int
    completed_steps: int
    failed_steps: int
    skipped_steps: int
    progress_percent: int
    estimated_time_remaining_ms: Optional[float] = None

    @classmethod
    def from_record(
        cls, record: "ExecutionRecord", now: Optional[datetime] = None
    ) -> "ExecutionProgress":
        """Compute progress counters for ``record``.

        ``condition_failed`` counts as completed. For terminal executions every
        step that was never attempted counts as skipped so the three counters
        always add up to ``total_steps``.
        """
        completed = sum(
            1
            for r in record.step_results
            if r.status in (StepStatus.SUCCESS, StepStatus.CONDITION_FAILED)
        )
        failed = sum(1 for r in record.step_results if r.status == StepStatus.FAILED)
        skipped = sum(1 for r in record.step_results if r.status == StepStatus.SKIPPED)
        if record.is_terminal:
            skipped += record.total_steps - len(record.step_results)

        total = record.total_steps
        settled = len(record.step_results)
        percent = 100 if record.is_terminal else (
            int(round(settled * 100 / total)) if total else 0
        )

        remaining: Optional[float] = None
        if (
            record.status == ExecutionStatus.RUNNING
            and record.started_at is not None
            and settled > 0
        ):
            elapsed = ((now or utcnow()) - record.started_at).total_seconds() * 1000
            remaining = elapsed / settled * (total - settled)

        return cls(
            execution_id=record.id,
            status=record.status,
            current_step=record.current_step_index,
            total_steps=total,
            completed_steps=completed,
            failed_steps=failed,
            skipped_steps=skipped,
            progress_percent=percent,
            estimated_time_remaining_ms=remaining,
        )


class ExecutionRecord(BaseModel):
    """Persisted state of one workflow execution.

    The owning orchestrator publishes a new copy after every change instead of
    mutating a stored instance, so readers always see a complete snapshot.
    """

    id: str
    workflow_id: str
    workflow_name: Optional[str] = None
    triggered_by: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_step_index: int = 0
    total_steps: int = 0
    attempt_count: int = 0
    max_attempts: int = 1
    step_results: list[StepResult] = Field(default_factory=list)
    error: Optional[StepError] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def execution_time_ms(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000

    def progress(self, now: Optional[datetime] = None) -> ExecutionProgress:
        return ExecutionProgress.from_record(self, now)


class ExecutionLogEntry(BaseModel):
    """Log line persisted alongside an execution."""

    execution_id: str
    level: str = "INFO"
    message: str
    step_index: Optional[int] = None
    step_name: Optional[str] = None
    data: Optional[dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionMetrics(BaseModel):
    """Aggregate statistics over a set of executions."""

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    canceled_executions: int = 0
    average_execution_time_ms: float = 0.0
    success_rate: float = 0.0
    recent_executions: list[ExecutionRecord] = Field(default_factory=list)

    @classmethod
    def from_records(
        cls, records: list[ExecutionRecord], recent: int = 10
    ) -> "ExecutionMetrics":
        """Summarize ``records`` (expected most-recent-first)."""
        total = len(records)
        successful = [r for r in records if r.status == ExecutionStatus.COMPLETED]
        failed = sum(1 for r in records if r.status == ExecutionStatus.FAILED)
        canceled = sum(1 for r in records if r.status == ExecutionStatus.CANCELED)
        durations = [
            r.execution_time_ms for r in successful if r.execution_time_ms is not None
        ]
        return cls(
            total_executions=total,
            successful_executions=len(successful),
            failed_executions=failed,
            canceled_executions=canceled,
            average_execution_time_ms=sum(durations) / len(durations) if durations else 0.0,
            success_rate=len(successful) * 100 / total if total else 0.0,
            recent_executions=records[:recent],
        )
