"""SQLite implementation of the execution store."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .models import (
    TERMINAL_STATUSES,
    ExecutionLogEntry,
    ExecutionRecord,
    ExecutionStatus,
    StepError,
    StepResult,
)
from .repository import ExecutionStore

logger = logging.getLogger(__name__)

_TERMINAL_VALUES = tuple(s.value for s in TERMINAL_STATUSES)


def _dump_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _load_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dump_json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load_json(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class SQLiteExecutionStore(ExecutionStore):
    """Persist execution history using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_name TEXT,
                triggered_by TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                current_step_index INTEGER NOT NULL DEFAULT 0,
                total_steps INTEGER NOT NULL DEFAULT 0,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 1,
                error TEXT,
                parameters TEXT,
                metadata TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions (workflow_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions (status)"
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_results (
                execution_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                output TEXT,
                error TEXT,
                PRIMARY KEY (execution_id, step_index)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                step_index INTEGER,
                step_name TEXT,
                data TEXT,
                timestamp TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_logs_execution ON execution_logs (execution_id)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _record_params(record: ExecutionRecord) -> tuple:
        return (
            record.workflow_id,
            record.workflow_name,
            record.triggered_by,
            record.status.value,
            _dump_dt(record.created_at),
            _dump_dt(record.started_at),
            _dump_dt(record.completed_at),
            record.current_step_index,
            record.total_steps,
            record.attempt_count,
            record.max_attempts,
            record.error.model_dump_json() if record.error else None,
            json.dumps(record.parameters),
            json.dumps(record.metadata),
        )

    def _insert_step_results(self, cur: sqlite3.Cursor, record: ExecutionRecord) -> None:
        for result in record.step_results:
            cur.execute(
                """
                INSERT OR IGNORE INTO step_results
                (execution_id, step_index, name, type, status, started_at,
                 finished_at, attempts, output, error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    result.step_index,
                    result.name,
                    result.type,
                    result.status.value,
                    _dump_dt(result.started_at),
                    _dump_dt(result.finished_at),
                    result.attempts,
                    _dump_json(result.output),
                    result.error.model_dump_json() if result.error else None,
                ),
            )

    def _create(self, record: ExecutionRecord) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                INSERT INTO executions
                (workflow_id, workflow_name, triggered_by, status, created_at,
                 started_at, completed_at, current_step_index, total_steps,
                 attempt_count, max_attempts, error, parameters, metadata, id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*self._record_params(record), record.id),
            )
            self._insert_step_results(cur, record)
            self._conn.commit()

    def _save(self, record: ExecutionRecord) -> bool:
        placeholders = ", ".join("?" for _ in _TERMINAL_VALUES)
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                f"""
                UPDATE executions SET
                    workflow_id = ?, workflow_name = ?, triggered_by = ?,
                    status = ?, created_at = ?, started_at = ?,
                    completed_at = ?, current_step_index = ?, total_steps = ?,
                    attempt_count = ?, max_attempts = ?, error = ?,
                    parameters = ?, metadata = ?
                WHERE id = ? AND status NOT IN ({placeholders})
                """,
                (*self._record_params(record), record.id, *_TERMINAL_VALUES),
            )
            if cur.rowcount == 0:
                self._conn.rollback()
                return False
            self._insert_step_results(cur, record)
            self._conn.commit()
            return True

    def _row_to_record(
        self, row: sqlite3.Row, step_rows: list[sqlite3.Row]
    ) -> ExecutionRecord:
        steps = [
            StepResult(
                step_index=r["step_index"],
                name=r["name"],
                type=r["type"],
                status=r["status"],
                started_at=_load_dt(r["started_at"]),
                finished_at=_load_dt(r["finished_at"]),
                attempts=r["attempts"],
                output=_load_json(r["output"]),
                error=StepError.model_validate_json(r["error"]) if r["error"] else None,
            )
            for r in step_rows
        ]
        return ExecutionRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            workflow_name=row["workflow_name"],
            triggered_by=row["triggered_by"],
            status=row["status"],
            created_at=_load_dt(row["created_at"]),
            started_at=_load_dt(row["started_at"]),
            completed_at=_load_dt(row["completed_at"]),
            current_step_index=row["current_step_index"],
            total_steps=row["total_steps"],
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            step_results=steps,
            error=StepError.model_validate_json(row["error"]) if row["error"] else None,
            parameters=_load_json(row["parameters"]) or {},
            metadata=_load_json(row["metadata"]) or {},
        )

    def _steps_for(self, execution_id: str) -> list[sqlite3.Row]:
        return self._fetchall(
            "SELECT * FROM step_results WHERE execution_id = ? ORDER BY step_index",
            execution_id,
        )

    # ------------------------------------------------------------------
    # Store API
    async def create_execution(self, record: ExecutionRecord) -> None:
        await asyncio.to_thread(self._create, record)

    async def save_execution(self, record: ExecutionRecord) -> bool:
        saved = await asyncio.to_thread(self._save, record)
        if not saved:
            logger.warning(
                f"Refusing to overwrite terminal or missing execution {record.id}"
            )
        return saved

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM executions WHERE id = ?", execution_id
        )
        if not row:
            return None
        step_rows = await asyncio.to_thread(self._steps_for, execution_id)
        return self._row_to_record(row, step_rows)

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        triggered_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ExecutionRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        if triggered_by is not None:
            clauses.append("triggered_by = ?")
            params.append(triggered_by)
        query = "SELECT * FROM executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        rows = await asyncio.to_thread(self._fetchall, query, *params)
        records: list[ExecutionRecord] = []
        for row in rows:
            step_rows = await asyncio.to_thread(self._steps_for, row["id"])
            records.append(self._row_to_record(row, step_rows))
        return records

    async def delete_executions_before(self, cutoff: datetime) -> int:
        placeholders = ", ".join("?" for _ in _TERMINAL_VALUES)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT id FROM executions WHERE created_at < ? AND status IN ({placeholders})",
            _dump_dt(cutoff),
            *_TERMINAL_VALUES,
        )
        for row in rows:
            await asyncio.to_thread(
                self._execute, "DELETE FROM step_results WHERE execution_id = ?", row["id"]
            )
            await asyncio.to_thread(
                self._execute, "DELETE FROM execution_logs WHERE execution_id = ?", row["id"]
            )
            await asyncio.to_thread(
                self._execute, "DELETE FROM executions WHERE id = ?", row["id"]
            )
        return len(rows)

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO execution_logs
            (execution_id, level, message, step_index, step_name, data, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            entry.execution_id,
            entry.level,
            entry.message,
            entry.step_index,
            entry.step_name,
            _dump_json(entry.data),
            _dump_dt(entry.timestamp),
        )

    async def list_logs(self, execution_id: str) -> list[ExecutionLogEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM execution_logs WHERE execution_id = ? ORDER BY id",
            execution_id,
        )
        return [
            ExecutionLogEntry(
                execution_id=r["execution_id"],
                level=r["level"],
                message=r["message"],
                step_index=r["step_index"],
                step_name=r["step_name"],
                data=_load_json(r["data"]),
                timestamp=_load_dt(r["timestamp"]),
            )
            for r in rows
        ]

    def close(self) -> None:
        self._conn.close()
