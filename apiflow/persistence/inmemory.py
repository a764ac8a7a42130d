"""In-memory implementation of the execution store."""

from __future__ import annotations

import itertools
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Set

from .models import (
    ExecutionLogEntry,
    ExecutionRecord,
    ExecutionStatus,
)
from .repository import ExecutionStore

logger = logging.getLogger(__name__)


class InMemoryExecutionStore(ExecutionStore):
    """Store execution history in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Snapshots are copied on the way in and
    out so callers never share instances with the store.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, ExecutionRecord] = {}
        self._by_workflow: Dict[str, Set[str]] = defaultdict(set)
        self._by_status: Dict[ExecutionStatus, Set[str]] = defaultdict(set)
        self._logs: Dict[str, List[ExecutionLogEntry]] = defaultdict(list)
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()

    # ------------------------------------------------------------------
    def _index(self, record: ExecutionRecord) -> None:
        previous = self._executions.get(record.id)
        if previous is not None:
            self._by_status[previous.status].discard(record.id)
        self._executions[record.id] = record.model_copy(deep=True)
        self._by_workflow[record.workflow_id].add(record.id)
        self._by_status[record.status].add(record.id)

    async def create_execution(self, record: ExecutionRecord) -> None:
        if record.id in self._executions:
            raise ValueError(f"Execution {record.id} already exists")
        self._sequence[record.id] = next(self._counter)
        self._index(record)

    async def save_execution(self, record: ExecutionRecord) -> bool:
        current = self._executions.get(record.id)
        if current is not None and current.is_terminal:
            logger.warning(
                f"Refusing to overwrite terminal execution {record.id} "
                f"({current.status.value} -> {record.status.value})"
            )
            return False
        self._index(record)
        return True

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        record = self._executions.get(execution_id)
        return record.model_copy(deep=True) if record else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        triggered_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ExecutionRecord]:
        ids: Set[str] = set(self._executions)
        if workflow_id is not None:
            ids &= self._by_workflow.get(workflow_id, set())
        if status is not None:
            ids &= self._by_status.get(ExecutionStatus(status), set())
        records = [self._executions[i] for i in ids]
        if triggered_by is not None:
            records = [r for r in records if r.triggered_by == triggered_by]
        records.sort(
            key=lambda r: (r.created_at, self._sequence.get(r.id, 0)), reverse=True
        )
        if limit is not None:
            records = records[:limit]
        return [r.model_copy(deep=True) for r in records]

    async def delete_executions_before(self, cutoff: datetime) -> int:
        doomed = [
            r for r in self._executions.values() if r.is_terminal and r.created_at < cutoff
        ]
        for record in doomed:
            del self._executions[record.id]
            self._by_workflow[record.workflow_id].discard(record.id)
            self._by_status[record.status].discard(record.id)
            self._logs.pop(record.id, None)
            self._sequence.pop(record.id, None)
        return len(doomed)

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        self._logs[entry.execution_id].append(entry.model_copy())

    async def list_logs(self, execution_id: str) -> list[ExecutionLogEntry]:
        return list(self._logs.get(execution_id, []))
