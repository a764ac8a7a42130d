"""Store abstraction for execution history persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from .models import ExecutionLogEntry, ExecutionRecord, ExecutionStatus


class ExecutionStore(Protocol):
    """Protocol for execution persistence backends.

    ``save_execution`` replaces the stored snapshot of a record. Backends must
    refuse to overwrite a record that is already terminal and report that by
    returning ``False``.
    """

    async def create_execution(self, record: ExecutionRecord) -> None:
        """Persist a freshly created execution record."""

    async def save_execution(self, record: ExecutionRecord) -> bool:
        """Publish a new snapshot of ``record``."""

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        """Retrieve an execution with all of its step results."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        triggered_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ExecutionRecord]:
        """Return matching executions, most recent first."""

    async def delete_executions_before(self, cutoff: datetime) -> int:
        """Delete terminal executions created before ``cutoff``."""

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        """Persist an execution log entry."""

    async def list_logs(self, execution_id: str) -> list[ExecutionLogEntry]:
        """Return log entries for an execution in chronological order."""
