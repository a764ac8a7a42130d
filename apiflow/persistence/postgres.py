"""PostgreSQL implementation of the execution store."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

import asyncpg

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

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


def _load_json(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


class PostgresExecutionStore(ExecutionStore):
    """Persist execution history using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_name TEXT,
                triggered_by TEXT,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                current_step_index INTEGER NOT NULL DEFAULT 0,
                total_steps INTEGER NOT NULL DEFAULT 0,
                attempt_count INTEGER NOT NULL DEFAULT 0,
                max_attempts INTEGER NOT NULL DEFAULT 1,
                error JSONB,
                parameters JSONB,
                metadata JSONB
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON executions (workflow_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions (status)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_results (
                execution_id TEXT NOT NULL REFERENCES executions (id) ON DELETE CASCADE,
                step_index INTEGER NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                attempts INTEGER NOT NULL DEFAULT 0,
                output JSONB,
                error JSONB,
                PRIMARY KEY (execution_id, step_index)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_logs (
                id SERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES executions (id) ON DELETE CASCADE,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                step_index INTEGER,
                step_name TEXT,
                data JSONB,
                timestamp TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _record_values(record: ExecutionRecord) -> list[Any]:
        return [
            record.id,
            record.workflow_id,
            record.workflow_name,
            record.triggered_by,
            record.status.value,
            record.created_at,
            record.started_at,
            record.completed_at,
            record.current_step_index,
            record.total_steps,
            record.attempt_count,
            record.max_attempts,
            record.error.model_dump_json() if record.error else None,
            json.dumps(record.parameters),
            json.dumps(record.metadata),
        ]

    async def _insert_step_results(
        self, conn: asyncpg.Connection, record: ExecutionRecord
    ) -> None:
        for result in record.step_results:
            await conn.execute(
                """
                INSERT INTO step_results
                (execution_id, step_index, name, type, status, started_at,
                 finished_at, attempts, output, error)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (execution_id, step_index) DO NOTHING
                """,
                record.id,
                result.step_index,
                result.name,
                result.type,
                result.status.value,
                result.started_at,
                result.finished_at,
                result.attempts,
                json.dumps(result.output) if result.output is not None else None,
                result.error.model_dump_json() if result.error else None,
            )

    @staticmethod
    def _row_to_record(row: asyncpg.Record, step_rows: list[asyncpg.Record]) -> ExecutionRecord:
        steps = [
            StepResult(
                step_index=r["step_index"],
                name=r["name"],
                type=r["type"],
                status=r["status"],
                started_at=r["started_at"],
                finished_at=r["finished_at"],
                attempts=r["attempts"],
                output=_load_json(r["output"]),
                error=StepError.model_validate(_load_json(r["error"])) if r["error"] else None,
            )
            for r in step_rows
        ]
        return ExecutionRecord(
            id=row["id"],
            workflow_id=row["workflow_id"],
            workflow_name=row["workflow_name"],
            triggered_by=row["triggered_by"],
            status=row["status"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            current_step_index=row["current_step_index"],
            total_steps=row["total_steps"],
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            step_results=steps,
            error=StepError.model_validate(_load_json(row["error"])) if row["error"] else None,
            parameters=_load_json(row["parameters"]) or {},
            metadata=_load_json(row["metadata"]) or {},
        )

    async def _load(self, conn: asyncpg.Connection, row: asyncpg.Record) -> ExecutionRecord:
        step_rows = await conn.fetch(
            "SELECT * FROM step_results WHERE execution_id = $1 ORDER BY step_index",
            row["id"],
        )
        return self._row_to_record(row, step_rows)

    # ------------------------------------------------------------------
    async def create_execution(self, record: ExecutionRecord) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO executions
                    (id, workflow_id, workflow_name, triggered_by, status,
                     created_at, started_at, completed_at, current_step_index,
                     total_steps, attempt_count, max_attempts, error,
                     parameters, metadata)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12,
                            $13, $14, $15)
                    """,
                    *self._record_values(record),
                )
                await self._insert_step_results(conn, record)
        finally:
            await conn.close()

    async def save_execution(self, record: ExecutionRecord) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                result = await conn.execute(
                    """
                    UPDATE executions SET
                        workflow_id = $2, workflow_name = $3, triggered_by = $4,
                        status = $5, created_at = $6, started_at = $7,
                        completed_at = $8, current_step_index = $9,
                        total_steps = $10, attempt_count = $11,
                        max_attempts = $12, error = $13, parameters = $14,
                        metadata = $15
                    WHERE id = $1 AND status <> ALL($16::text[])
                    """,
                    *self._record_values(record),
                    _TERMINAL_VALUES,
                )
                if result.endswith(" 0"):
                    logger.warning(
                        f"Refusing to overwrite terminal or missing execution {record.id}"
                    )
                    return False
                await self._insert_step_results(conn, record)
                return True
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM executions WHERE id = $1", execution_id
            )
            if not row:
                return None
            return await self._load(conn, row)
        finally:
            await conn.close()

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        triggered_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ExecutionRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("workflow_id", workflow_id),
            ("status", ExecutionStatus(status).value if status is not None else None),
            ("triggered_by", triggered_by),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        query = "SELECT * FROM executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, seq DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"

        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
            return [await self._load(conn, row) for row in rows]
        finally:
            await conn.close()

    async def delete_executions_before(self, cutoff: datetime) -> int:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "DELETE FROM executions WHERE created_at < $1 AND status = ANY($2::text[])",
                cutoff,
                _TERMINAL_VALUES,
            )
        finally:
            await conn.close()
        return int(result.split()[-1])

    async def append_log(self, entry: ExecutionLogEntry) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO execution_logs
                (execution_id, level, message, step_index, step_name, data, timestamp)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                entry.execution_id,
                entry.level,
                entry.message,
                entry.step_index,
                entry.step_name,
                json.dumps(entry.data) if entry.data is not None else None,
                entry.timestamp,
            )
        finally:
            await conn.close()

    async def list_logs(self, execution_id: str) -> list[ExecutionLogEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM execution_logs WHERE execution_id = $1 ORDER BY id",
                execution_id,
            )
        finally:
            await conn.close()
        return [
            ExecutionLogEntry(
                execution_id=r["execution_id"],
                level=r["level"],
                message=r["message"],
                step_index=r["step_index"],
                step_name=r["step_name"],
                data=_load_json(r["data"]),
                timestamp=r["timestamp"],
            )
            for r in rows
        ]
