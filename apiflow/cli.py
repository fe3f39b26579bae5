"""Command line interface for apiflow workers and execution management."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml

from .config import load_config
from .contracts import ExecutionStatus, Workflow
from .engine import Engine, build_engine
from .errors import ApiflowError

app = typer.Typer(help="CLI for apiflow workflow executions")

worker_app = typer.Typer(help="Commands for running queue workers")
execution_app = typer.Typer(help="Commands for inspecting and controlling executions")
workflow_app = typer.Typer(help="Commands for running workflow definitions")

app.add_typer(worker_app, name="worker")
app.add_typer(execution_app, name="execution")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main() -> None:
    """apiflow CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _engine() -> Engine:
    return build_engine(load_config())


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


@worker_app.command("run")
def worker_run(
    queue: Optional[str] = typer.Option(None, help="Queue to consume"),
    team_size: Optional[int] = typer.Option(None, help="Concurrent jobs"),
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run until interrupted)"
    ),
) -> None:
    """
    Run a queue worker that executes submitted workflows.

    Example:
        apiflow worker run --team-size 4
        apiflow worker run --queue workflow-execution --lifespan 300
    """
    engine = _engine()
    if queue:
        engine.executor.config.queue_name = queue

    async def serve() -> None:
        await engine.queue_service.initialize()
        try:
            worker_id = await engine.executor.register_worker(team_size=team_size)
            typer.echo(f"Worker {worker_id} consuming {engine.executor.config.queue_name}")
            if lifespan is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(lifespan)
        finally:
            await engine.stop()

    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        typer.echo("Worker stopped")


@workflow_app.command("run")
def workflow_run(
    workflow_path: Path,
    user_id: str = typer.Option(..., help="User the workflow runs for"),
    params: Optional[str] = typer.Option(None, help="JSON object of parameters"),
    queued: bool = typer.Option(
        False, "--queued", help="Submit to the queue instead of running inline"
    ),
) -> None:
    """
    Run a workflow definition (YAML or JSON file).

    Example:
        apiflow workflow run ./sync-users.yaml --user-id u-1
        apiflow workflow run ./sync-users.json --user-id u-1 --params '{"team": "ops"}'
    """
    if not workflow_path.exists():
        _fail(f"Workflow file not found: {workflow_path}")
    with open(workflow_path) as f:
        definition = yaml.safe_load(f) or {}
    try:
        workflow = Workflow.model_validate(definition)
        parameters = json.loads(params) if params else {}
    except ValueError as e:
        _fail(f"Invalid workflow: {e}")

    engine = _engine()
    if not queued:
        engine.config.executor.use_queue = False

    async def run():
        async with engine:
            if queued:
                return await engine.executor.submit_workflow_for_execution(
                    workflow, user_id, parameters
                )
            return await engine.executor.execute_workflow(workflow, user_id, parameters)

    try:
        outcome = asyncio.run(run())
    except ApiflowError as e:
        _fail(str(e))
    if queued:
        typer.echo(f"Execution {outcome.execution_id} queued as job {outcome.queue_job_id}")
        return
    typer.echo(f"Execution {outcome.execution_id}: {outcome.status.value}")
    typer.echo(
        f"Steps: {outcome.completed_steps}/{outcome.total_steps} completed, "
        f"{outcome.failed_steps} failed"
    )
    if outcome.error:
        typer.echo(f"Error: {outcome.error}")
    if not outcome.success:
        raise typer.Exit(code=1)


@execution_app.command("list")
def execution_list(
    status: Optional[ExecutionStatus] = typer.Option(None, help="Only this status"),
) -> None:
    """
    List executions, newest first.

    Example:
        apiflow execution list --status FAILED
    """
    engine = _engine()
    statuses = [status] if status else None
    executions = asyncio.run(engine.repository.list_executions(statuses=statuses))
    if not executions:
        typer.echo("No executions found")
        return
    for e in executions:
        typer.echo(
            f"{e.id}\t{e.status.value}\t{e.workflow_id}\t"
            f"{e.completed_steps}/{e.total_steps}"
        )


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show one execution with its step results and log trail.

    Example:
        apiflow execution show 2f1c...
    """
    engine = _engine()

    async def load():
        execution = await engine.state_manager.get_execution_state(execution_id)
        logs = await engine.state_manager.get_execution_logs(execution_id) if execution else []
        return execution, logs

    execution, logs = asyncio.run(load())
    if execution is None:
        _fail("Execution not found")
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Workflow: {execution.workflow_id}  User: {execution.user_id}")
    typer.echo(
        f"Steps: {execution.completed_steps}/{execution.total_steps} completed, "
        f"{execution.failed_steps} failed (attempt {execution.attempt_count}"
        f"/{execution.max_attempts})"
    )
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    for order, result in sorted(execution.step_results.items()):
        outcome = "ok" if result.success else f"failed: {result.error}"
        typer.echo(f"- step {order}: {outcome} ({result.duration:.0f}ms)")
    for entry in logs:
        typer.echo(f"  [{entry.level}] {entry.timestamp.isoformat()} {entry.message}")


def _control(action: str, execution_id: str, actor: str) -> None:
    engine = _engine()
    method = getattr(engine.executor, f"{action}_execution")
    try:
        execution = asyncio.run(method(execution_id, actor))
    except ApiflowError as e:
        _fail(str(e))
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@execution_app.command("pause")
def execution_pause(
    execution_id: str, actor: str = typer.Option(..., help="Who pauses the execution")
) -> None:
    """Pause a running execution."""
    _control("pause", execution_id, actor)


@execution_app.command("resume")
def execution_resume(
    execution_id: str, actor: str = typer.Option(..., help="Who resumes the execution")
) -> None:
    """Resume a paused execution."""
    _control("resume", execution_id, actor)


@execution_app.command("cancel")
def execution_cancel(
    execution_id: str, actor: str = typer.Option(..., help="Who cancels the execution")
) -> None:
    """Cancel a pending, running or paused execution."""
    _control("cancel", execution_id, actor)


@app.command("metrics")
def metrics(
    workflow_id: Optional[str] = typer.Option(None, help="Only this workflow"),
    user_id: Optional[str] = typer.Option(None, help="Only this user"),
) -> None:
    """
    Print execution metrics.

    Example:
        apiflow metrics --workflow-id wf-1
    """
    engine = _engine()
    m = asyncio.run(
        engine.state_manager.get_execution_metrics(workflow_id=workflow_id, user_id=user_id)
    )
    typer.echo(f"Total: {m.total_executions}")
    typer.echo(f"Completed: {m.successful_executions}")
    typer.echo(f"Failed: {m.failed_executions}")
    typer.echo(f"Cancelled: {m.cancelled_executions}")
    typer.echo(f"Average duration: {m.average_execution_time:.0f}ms")
    typer.echo(f"Success rate: {m.success_rate:.1f}%")


@app.command("cleanup")
def cleanup(
    retention_days: int = typer.Option(30, help="Keep executions newer than this"),
) -> None:
    """Delete finished executions older than the retention period."""
    engine = _engine()
    deleted = asyncio.run(engine.state_manager.cleanup_old_executions(retention_days))
    typer.echo(f"Deleted {deleted} executions")


if __name__ == "__main__":
    app()
