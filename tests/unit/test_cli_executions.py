import asyncio
import json
import uuid
from datetime import timedelta

import httpx
import pytest
from typer.testing import CliRunner

import apiflow.cli as cli
from apiflow import ConnectionClient, InMemoryConnectionResolver, WorkflowEngine
from apiflow.cli import app
from apiflow.persistence import (
    ExecutionLogEntry,
    ExecutionRecord,
    ExecutionStatus,
    SQLiteExecutionStore,
    StepError,
    StepResult,
    StepStatus,
)
from apiflow.persistence.models import utcnow

WORKFLOW_YAML = """
id: ping
name: Ping
connection_id: api
steps:
  - name: ping
    type: api_call
    config:
      method: GET
      path: /ping/{{ params.n }}
"""

runner = CliRunner()


@pytest.fixture(autouse=True)
def no_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("APIFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("APIFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


def _finished(store, workflow_id="ping", status=ExecutionStatus.COMPLETED, **fields):
    started = utcnow() - timedelta(seconds=1)
    record = ExecutionRecord(
        id=str(uuid.uuid4()),
        workflow_id=workflow_id,
        workflow_name="Ping",
        status=status,
        started_at=started,
        completed_at=started + timedelta(milliseconds=250),
        total_steps=1,
        **fields,
    )
    asyncio.run(store.create_execution(record))
    return record


def test_execution_list_and_filters(cli_store):
    done = _finished(cli_store)
    failed = _finished(cli_store, workflow_id="other", status=ExecutionStatus.FAILED)

    result = runner.invoke(app, ["execution", "list"])
    assert result.exit_code == 0, result.stdout
    assert done.id in result.stdout
    assert failed.id in result.stdout

    result = runner.invoke(app, ["execution", "list", "--status", "failed"])
    assert failed.id in result.stdout
    assert done.id not in result.stdout


def test_execution_list_empty(cli_store):
    result = runner.invoke(app, ["execution", "list"])
    assert result.exit_code == 0
    assert "No executions found" in result.stdout


def test_execution_show_and_missing(cli_store):
    record = _finished(
        cli_store,
        status=ExecutionStatus.FAILED,
        triggered_by="alice",
        error=StepError(type="HTTPClientError", message="GET /ping returned 404", status_code=404),
        step_results=[
            StepResult(
                step_index=0,
                name="ping",
                type="api_call",
                status=StepStatus.FAILED,
                attempts=1,
                error=StepError(type="HTTPClientError", message="GET /ping returned 404"),
            )
        ],
    )

    result = runner.invoke(app, ["execution", "show", record.id])
    assert result.exit_code == 0, result.stdout
    assert f"Execution {record.id}: failed" in result.stdout
    assert "Triggered by: alice" in result.stdout
    assert "1. ping [api_call]: failed" in result.stdout

    missing = runner.invoke(app, ["execution", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Execution not found" in missing.stdout


def test_execution_status_and_logs(cli_store):
    record = _finished(cli_store)
    asyncio.run(
        cli_store.append_log(ExecutionLogEntry(execution_id=record.id, message="Execution completed"))
    )

    status = runner.invoke(app, ["execution", "status", record.id])
    assert status.exit_code == 0
    assert "Progress: 100%" in status.stdout
    assert "0 completed, 0 failed, 1 skipped of 1" in status.stdout

    logs = runner.invoke(app, ["execution", "logs", record.id])
    assert logs.exit_code == 0
    assert "INFO Execution completed" in logs.stdout


def test_execution_metrics(cli_store):
    _finished(cli_store)
    _finished(cli_store, status=ExecutionStatus.CANCELED)

    result = runner.invoke(app, ["execution", "metrics", "--workflow", "ping"])
    assert result.exit_code == 0
    metrics = json.loads(result.stdout)
    assert metrics["total_executions"] == 2
    assert metrics["canceled_executions"] == 1
    assert metrics["success_rate"] == 50.0
    assert "recent_executions" not in metrics


def test_execution_stuck_and_cleanup(cli_store):
    stuck = ExecutionRecord(
        id=str(uuid.uuid4()),
        workflow_id="ping",
        status=ExecutionStatus.RUNNING,
        started_at=utcnow() - timedelta(hours=1),
    )
    asyncio.run(cli_store.create_execution(stuck))
    _finished(cli_store, created_at=utcnow() - timedelta(days=10))

    result = runner.invoke(app, ["execution", "stuck", "--minutes", "5"])
    assert stuck.id in result.stdout

    result = runner.invoke(app, ["execution", "cleanup", "--days", "7"])
    assert result.exit_code == 0
    assert "Deleted 1 executions" in result.stdout


def test_workflow_validate(cli_store, tmp_path):
    good = tmp_path / "ping.yaml"
    good.write_text(WORKFLOW_YAML)
    bad = tmp_path / "bad.yaml"
    bad.write_text(WORKFLOW_YAML.replace("params.n", "steps.later.id"))

    result = runner.invoke(app, ["workflow", "validate", str(good)])
    assert result.exit_code == 0, result.stdout
    assert "Workflow ping is valid (1 steps)" in result.stdout

    result = runner.invoke(app, ["workflow", "validate", str(bad)])
    assert result.exit_code == 1
    assert "later" in result.stdout

    result = runner.invoke(app, ["workflow", "validate", str(tmp_path / "none.yaml")])
    assert result.exit_code == 1
    assert "Workflow file not found" in result.stdout


@pytest.mark.parametrize("status_code,exit_code,state", [(200, 0, "completed"), (404, 1, "failed")])
def test_workflow_run(cli_store, tmp_path, monkeypatch, make_engine, status_code, exit_code, state):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(status_code, json={"pong": True})

    monkeypatch.setattr(cli, "_engine", lambda config=None: make_engine(handler))
    path = tmp_path / "ping.yaml"
    path.write_text(WORKFLOW_YAML)

    result = runner.invoke(
        app, ["workflow", "run", str(path), "-p", "n=3", "--triggered-by", "alice"]
    )

    assert result.exit_code == exit_code, result.stdout
    assert "Started execution" in result.stdout
    assert f": {state}" in result.stdout
    assert seen[0] == "/ping/3"


def test_workflow_run_rejects_bad_parameter(cli_store, tmp_path):
    path = tmp_path / "ping.yaml"
    path.write_text(WORKFLOW_YAML)

    result = runner.invoke(app, ["workflow", "run", str(path), "-p", "novalue"])
    assert result.exit_code == 2
    assert "expected key=value" in result.stdout


def test_workflow_run_uses_store_from_config_file(cli_store, tmp_path, monkeypatch):
    db_path = tmp_path / "history.db"
    config_path = tmp_path / "apiflow.yaml"
    config_path.write_text(f"store:\n  database_url: sqlite://{db_path}\n")
    workflow_path = tmp_path / "ping.yaml"
    workflow_path.write_text(WORKFLOW_YAML)

    client = ConnectionClient(
        "api",
        base_url="https://api.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
    )

    def engine_with_mock_api(**kwargs):
        return WorkflowEngine(connections=InMemoryConnectionResolver({"api": client}), **kwargs)

    monkeypatch.setattr(cli, "WorkflowEngine", engine_with_mock_api)

    result = runner.invoke(
        app, ["workflow", "run", str(workflow_path), "-p", "n=1", "--config", str(config_path)]
    )

    assert result.exit_code == 0, result.stdout
    records = asyncio.run(SQLiteExecutionStore(db_path).list_executions())
    assert [r.status for r in records] == [ExecutionStatus.COMPLETED]
    assert asyncio.run(cli_store.list_executions()) == []
