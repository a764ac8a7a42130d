import uuid
from datetime import timedelta

import pytest

from apiflow.persistence import (
    ExecutionLogEntry,
    ExecutionRecord,
    ExecutionStatus,
    InMemoryExecutionStore,
    SQLiteExecutionStore,
    StepError,
    StepResult,
    StepStatus,
)
from apiflow.persistence.models import utcnow


@pytest.fixture(params=["memory", "sqlite"])
def execution_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryExecutionStore()
    return SQLiteExecutionStore(tmp_path / "executions.db")


def _record(workflow_id: str = "wf", **fields) -> ExecutionRecord:
    return ExecutionRecord(id=str(uuid.uuid4()), workflow_id=workflow_id, **fields)


@pytest.mark.asyncio
async def test_store_crud(execution_store):
    record = _record(workflow_name="Sync users", triggered_by="alice", total_steps=2,
                     parameters={"org": 42})
    await execution_store.create_execution(record)

    running = record.model_copy(
        update={"status": ExecutionStatus.RUNNING, "started_at": utcnow(), "attempt_count": 1}
    )
    assert await execution_store.save_execution(running) is True

    result = StepResult(
        step_index=0,
        name="fetch",
        type="api_call",
        status=StepStatus.SUCCESS,
        started_at=utcnow(),
        finished_at=utcnow(),
        attempts=1,
        output={"users": [1, 2]},
    )
    failed = StepResult(
        step_index=1,
        name="post",
        type="api_call",
        status=StepStatus.FAILED,
        attempts=3,
        error=StepError(type="HTTPServerError", message="boom", status_code=503, retryable=True),
    )
    finished = running.model_copy(
        update={
            "status": ExecutionStatus.FAILED,
            "completed_at": utcnow(),
            "step_results": [result, failed],
            "error": failed.error,
            "metadata": {"note": "x"},
        }
    )
    assert await execution_store.save_execution(finished) is True

    stored = await execution_store.get_execution(record.id)
    assert stored is not None
    assert stored.status == ExecutionStatus.FAILED
    assert stored.triggered_by == "alice"
    assert stored.parameters == {"org": 42}
    assert stored.metadata == {"note": "x"}
    assert [r.name for r in stored.step_results] == ["fetch", "post"]
    assert stored.step_results[0].output == {"users": [1, 2]}
    assert stored.step_results[1].error.status_code == 503
    assert stored.error.type == "HTTPServerError"
    assert stored.execution_time_ms is not None

    assert await execution_store.get_execution("missing") is None


@pytest.mark.asyncio
async def test_terminal_records_are_not_overwritten(execution_store):
    record = _record()
    await execution_store.create_execution(record)
    canceled = record.model_copy(
        update={"status": ExecutionStatus.CANCELED, "completed_at": utcnow()}
    )
    assert await execution_store.save_execution(canceled) is True

    completed = record.model_copy(update={"status": ExecutionStatus.COMPLETED})
    assert await execution_store.save_execution(completed) is False
    assert (await execution_store.get_execution(record.id)).status == ExecutionStatus.CANCELED


@pytest.mark.asyncio
async def test_list_executions_filters_and_orders(execution_store):
    now = utcnow()
    oldest = _record("sync", created_at=now - timedelta(minutes=2), triggered_by="alice")
    middle = _record("report", created_at=now - timedelta(minutes=1), triggered_by="bob")
    newest = _record("sync", created_at=now, triggered_by="bob")
    for record in (oldest, middle, newest):
        await execution_store.create_execution(record)
    await execution_store.save_execution(
        newest.model_copy(update={"status": ExecutionStatus.COMPLETED})
    )

    assert [r.id for r in await execution_store.list_executions()] == [
        newest.id,
        middle.id,
        oldest.id,
    ]
    assert [r.id for r in await execution_store.list_executions(workflow_id="sync")] == [
        newest.id,
        oldest.id,
    ]
    assert [
        r.id for r in await execution_store.list_executions(status=ExecutionStatus.COMPLETED)
    ] == [newest.id]
    assert [r.id for r in await execution_store.list_executions(triggered_by="bob")] == [
        newest.id,
        middle.id,
    ]
    assert len(await execution_store.list_executions(limit=1)) == 1


@pytest.mark.asyncio
async def test_delete_before_keeps_running_executions(execution_store):
    old = utcnow() - timedelta(days=40)
    finished = _record(created_at=old)
    running = _record(created_at=old)
    recent = _record()
    for record in (finished, running, recent):
        await execution_store.create_execution(record)
    await execution_store.save_execution(
        finished.model_copy(update={"status": ExecutionStatus.COMPLETED})
    )
    await execution_store.save_execution(
        running.model_copy(update={"status": ExecutionStatus.RUNNING})
    )
    await execution_store.append_log(ExecutionLogEntry(execution_id=finished.id, message="done"))

    deleted = await execution_store.delete_executions_before(utcnow() - timedelta(days=30))

    assert deleted == 1
    assert await execution_store.get_execution(finished.id) is None
    assert await execution_store.list_logs(finished.id) == []
    assert await execution_store.get_execution(running.id) is not None
    assert await execution_store.get_execution(recent.id) is not None


@pytest.mark.asyncio
async def test_logs_are_returned_in_order(execution_store):
    record = _record()
    await execution_store.create_execution(record)
    await execution_store.append_log(ExecutionLogEntry(execution_id=record.id, message="first"))
    await execution_store.append_log(
        ExecutionLogEntry(
            execution_id=record.id,
            level="WARNING",
            message="second",
            step_index=0,
            step_name="fetch",
            data={"attempts": 2},
        )
    )

    logs = await execution_store.list_logs(record.id)
    assert [entry.message for entry in logs] == ["first", "second"]
    assert logs[1].level == "WARNING"
    assert logs[1].step_name == "fetch"
    assert logs[1].data == {"attempts": 2}


@pytest.mark.asyncio
async def test_memory_store_returns_copies():
    store = InMemoryExecutionStore()
    record = _record(metadata={"a": 1})
    await store.create_execution(record)

    fetched = await store.get_execution(record.id)
    fetched.metadata["a"] = 2

    assert (await store.get_execution(record.id)).metadata == {"a": 1}


def test_progress_counts_unattempted_steps_as_skipped():
    record = _record(
        status=ExecutionStatus.FAILED,
        total_steps=4,
        step_results=[
            StepResult(step_index=0, name="a", type="api_call", status=StepStatus.SUCCESS),
            StepResult(step_index=1, name="b", type="api_call", status=StepStatus.FAILED),
        ],
    )

    progress = record.progress()

    assert (progress.completed_steps, progress.failed_steps, progress.skipped_steps) == (1, 1, 2)
    assert progress.progress_percent == 100


def test_progress_of_running_execution():
    started = utcnow() - timedelta(seconds=2)
    record = _record(
        status=ExecutionStatus.RUNNING,
        started_at=started,
        total_steps=4,
        current_step_index=1,
        step_results=[
            StepResult(step_index=0, name="a", type="api_call", status=StepStatus.SUCCESS),
        ],
    )

    progress = record.progress(now=started + timedelta(seconds=2))

    assert progress.progress_percent == 25
    assert progress.skipped_steps == 0
    assert progress.current_step == 1
    assert progress.estimated_time_remaining_ms == pytest.approx(6000)
