"""Command line interface for running and inspecting apiflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pydantic
import typer
import yaml

from apiflow import WorkflowDefinition, WorkflowEngine, get_store
from apiflow.config import load_config
from apiflow.constants import DEFAULT_RETENTION_DAYS
from apiflow.errors import ApiflowError
from apiflow.persistence import ExecutionRecord, ExecutionStatus

app = typer.Typer(help="CLI for apiflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for running and checking workflows")
execution_app = typer.Typer(help="Commands for inspecting execution history")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Python logging level"),
) -> None:
    """apiflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine(config_path: Optional[Path] = None) -> WorkflowEngine:
    config = load_config(str(config_path) if config_path else None)
    return WorkflowEngine(store=get_store(config=config), config=config)


def _load_workflow(path: Path) -> WorkflowDefinition:
    try:
        return WorkflowDefinition.load(path)
    except FileNotFoundError:
        typer.secho(f"Workflow file not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except (pydantic.ValidationError, yaml.YAMLError) as exc:
        typer.secho(f"Invalid workflow file {path}:\n{exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_params(values: List[str]) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    for item in values:
        key, sep, raw = item.partition("=")
        if not sep or not key:
            typer.secho(f"Invalid parameter {item!r}; expected key=value", fg=typer.colors.RED)
            raise typer.Exit(code=2)
        params[key] = yaml.safe_load(raw) if raw else ""
    return params


def _echo_record(record: ExecutionRecord) -> None:
    typer.echo(f"Execution {record.id}: {record.status.value}")
    typer.echo(f"Workflow: {record.workflow_name or record.workflow_id}")
    if record.triggered_by:
        typer.echo(f"Triggered by: {record.triggered_by}")
    if record.execution_time_ms is not None:
        typer.echo(f"Duration: {record.execution_time_ms:.0f} ms")
    if record.error:
        typer.echo(f"Error: {record.error.type}: {record.error.message}")
    for result in record.step_results:
        line = f"- {result.step_index + 1}. {result.name} [{result.type}]: {result.status.value}"
        if result.attempts > 1:
            line += f" after {result.attempts} attempts"
        if result.error:
            line += f" ({result.error.message})"
        typer.echo(line)


# ----------------------------------------------------------------------
# workflow


@workflow_app.command("run")
def workflow_run(
    workflow_path: Path,
    param: List[str] = typer.Option([], "--param", "-p", help="Parameter as key=value"),
    triggered_by: Optional[str] = typer.Option(None, help="User recorded on the execution"),
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """
    Run a workflow file to completion and print its execution record.

    Ctrl-C cancels the running execution and still prints its final state.

    Example:
        apiflow workflow run ./workflows/sync_users.yaml -p org_id=42
    """
    workflow = _load_workflow(workflow_path)
    params = _parse_params(param)

    async def _run() -> ExecutionRecord:
        engine = _engine(config)
        try:
            execution_id = await engine.start_workflow(workflow, triggered_by, params)
            typer.echo(f"Started execution {execution_id}")
            try:
                return await engine.wait_for_completion(execution_id)
            except asyncio.CancelledError:
                await engine.cancel_execution(execution_id, canceled_by="cli")
                _echo_record(await engine.wait_for_completion(execution_id))
                raise
        finally:
            await engine.shutdown()

    try:
        record = asyncio.run(_run())
    except KeyboardInterrupt:
        raise typer.Exit(code=130)
    except ApiflowError as exc:
        typer.secho(exc.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)

    _echo_record(record)
    if record.status != ExecutionStatus.COMPLETED:
        raise typer.Exit(code=1)


@workflow_app.command("validate")
def workflow_validate(
    workflow_path: Path,
    config: Optional[Path] = typer.Option(None, help="Path to config.yaml"),
) -> None:
    """Check a workflow file without running it."""
    workflow = _load_workflow(workflow_path)
    problems = _engine(config).workflow_problems(workflow)
    if problems:
        typer.secho(f"Workflow {workflow.id} is invalid:", fg=typer.colors.RED)
        for problem in problems:
            typer.echo(f"- {problem}")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow.id} is valid ({len(workflow.steps)} steps)")


# ----------------------------------------------------------------------
# execution


@execution_app.command("list")
def execution_list(
    workflow: Optional[str] = typer.Option(None, help="Filter by workflow id"),
    status: Optional[ExecutionStatus] = typer.Option(None, help="Filter by status"),
    limit: int = typer.Option(20, help="Maximum number of executions"),
) -> None:
    """
    List executions, most recent first.

    Example:
        apiflow execution list --workflow sync_users --status failed
    """
    records = asyncio.run(
        _engine().list_execution_history(workflow_id=workflow, status=status, limit=limit)
    )
    if not records:
        typer.echo("No executions found")
        return
    for record in records:
        typer.echo(
            f"{record.id}\t{record.workflow_id}\t{record.status.value}\t"
            f"{record.created_at.isoformat()}"
        )


def _fetch(coro):
    try:
        return asyncio.run(coro)
    except ApiflowError as exc:
        typer.echo(exc.message)
        raise typer.Exit(code=1)


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution with its step results."""
    _echo_record(_fetch(_engine().get_execution_details(execution_id)))


@execution_app.command("status")
def execution_status(execution_id: str) -> None:
    """Show progress counters for an execution."""
    progress = _fetch(_engine().get_execution_status(execution_id))
    typer.echo(f"Execution {progress.execution_id}: {progress.status.value}")
    typer.echo(
        f"Steps: {progress.completed_steps} completed, {progress.failed_steps} failed, "
        f"{progress.skipped_steps} skipped of {progress.total_steps}"
    )
    typer.echo(f"Progress: {progress.progress_percent}%")


@execution_app.command("logs")
def execution_logs(execution_id: str) -> None:
    """Print the persisted log of an execution."""
    for entry in _fetch(_engine().get_execution_logs(execution_id)):
        typer.echo(f"{entry.timestamp.isoformat()} {entry.level} {entry.message}")


@execution_app.command("metrics")
def execution_metrics(
    workflow: Optional[str] = typer.Option(None, help="Filter by workflow id"),
    triggered_by: Optional[str] = typer.Option(None, help="Filter by user"),
) -> None:
    """Print aggregate execution statistics as JSON."""
    metrics = asyncio.run(
        _engine().get_execution_metrics(workflow_id=workflow, triggered_by=triggered_by)
    )
    typer.echo(json.dumps(metrics.model_dump(exclude={"recent_executions"}), indent=2))


@execution_app.command("stuck")
def execution_stuck(
    minutes: Optional[int] = typer.Option(None, help="Minutes a running execution may take"),
) -> None:
    """List running executions that exceeded the stuck threshold."""
    records = asyncio.run(_engine().get_stuck_executions(minutes))
    if not records:
        typer.echo("No stuck executions")
        return
    for record in records:
        typer.echo(f"{record.id}\t{record.workflow_id}\t{record.started_at.isoformat()}")


@execution_app.command("cleanup")
def execution_cleanup(
    days: int = typer.Option(DEFAULT_RETENTION_DAYS, help="Keep executions newer than this"),
) -> None:
    """Delete finished executions older than the retention period."""
    deleted = asyncio.run(_engine().cleanup_old_executions(days))
    typer.echo(f"Deleted {deleted} executions")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
