"""Command line interface for running flowkeeper workers and managing workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import typer

from .config import load_config
from .contracts import PlatformEvent
from .errors import FlowkeeperError
from .runtime import Runtime, build_runtime

T = TypeVar("T")

app = typer.Typer(help="CLI for flowkeeper workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
execution_app = typer.Typer(help="Commands for inspecting and controlling executions")
event_app = typer.Typer(help="Commands for platform events")
schedule_app = typer.Typer(help="Commands for scheduled triggers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(event_app, name="event")
app.add_typer(schedule_app, name="schedule")

_state: Dict[str, Any] = {"config_path": None}


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to a YAML config file"
    ),
) -> None:
    """flowkeeper CLI entry point."""
    _state["config_path"] = config
    logging.basicConfig(
        level=load_config(config).log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run(
    operation: Callable[[Runtime], Awaitable[T]], with_transport: bool = False
) -> T:
    """Build a runtime inside the event loop, run ``operation`` and clean up."""

    async def runner() -> T:
        runtime = build_runtime(load_config(_state["config_path"]), with_transport=with_transport)
        try:
            return await operation(runtime)
        finally:
            await runtime.aclose()

    try:
        return asyncio.run(runner())
    except FlowkeeperError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _parse_payload(payload: Optional[str]) -> Dict[str, Any]:
    if not payload:
        return {}
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON payload: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    if not isinstance(data, dict):
        typer.secho("Payload must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    return data


@app.command("worker")
def worker(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
    consume: bool = typer.Option(
        True, help="Consume platform events from the configured transport"
    ),
) -> None:
    """
    Run a worker process.

    The worker consumes platform events from the configured transport, fires
    due schedules and runs pending or resumable executions.

    Example:
        flowkeeper worker
        flowkeeper worker --lifespan 60 --no-consume
    """
    typer.echo("Starting flowkeeper worker")
    _run(lambda runtime: runtime.serve(lifespan), with_transport=consume)


@workflow_app.command("list")
def workflow_list(
    tenant: Optional[str] = typer.Option(None, help="Only workflows of this tenant"),
) -> None:
    """
    List workflows with step counts and their latest execution.

    Example:
        flowkeeper workflow list --tenant acme
        # Output: 3f2c...    lead-follow-up    active    3 steps    last: completed
    """
    summaries = _run(lambda runtime: runtime.service.list_workflows(tenant_id=tenant))
    if not summaries:
        typer.echo("No workflows found")
        return
    for summary in summaries:
        wf = summary.workflow
        last = summary.recent_executions[0].status if summary.recent_executions else "-"
        state = "active" if wf.is_active else "inactive"
        typer.echo(
            f"{wf.id}\t{wf.slug}\t{state}\t{summary.step_count} steps\tlast: {last}"
        )


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow with its trigger, steps and recent executions."""
    detail = _run(lambda runtime: runtime.service.get_workflow(workflow_id))
    wf = detail.workflow
    typer.echo(f"Workflow {wf.id}: {wf.name} ({'active' if wf.is_active else 'inactive'})")
    typer.echo(f"Trigger: {wf.trigger_type.value} {wf.trigger_config.model_dump(exclude={'kind'})}")
    typer.echo(f"Runs: {wf.total_runs} total, {wf.successful_runs} ok, {wf.failed_runs} failed")
    for step in detail.steps:
        typer.echo(f"- [{step.position}] {step.kind.value} {step.name or step.id}")
    for execution in detail.recent_executions:
        typer.echo(f"  {execution.id}\t{execution.status}\t{execution.created_at.isoformat()}")


@workflow_app.command("import")
def workflow_import(
    path: str,
    tenant: Optional[str] = typer.Option(None, help="Override the tenant of every workflow"),
) -> None:
    """
    Import workflows from a YAML bundle.

    Example:
        flowkeeper workflow import workflows.yaml --tenant acme
    """
    workflows = _run(lambda runtime: runtime.service.load_bundle(path, tenant_id=tenant))
    for wf in workflows:
        typer.echo(f"Imported {wf.slug} ({wf.id})")


@workflow_app.command("trigger")
def workflow_trigger(
    workflow_id: str,
    payload: Optional[str] = typer.Option(None, help="JSON object passed as trigger data"),
    run: bool = typer.Option(False, "--run", help="Run the execution right away"),
) -> None:
    """Manually trigger a workflow."""
    data = _parse_payload(payload)

    async def operation(runtime: Runtime):
        execution = await runtime.service.trigger(workflow_id, data)
        if run:
            execution = await runtime.engine.run(execution.id)
        return execution

    execution = _run(operation)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@execution_app.command("list")
def execution_list(
    workflow: Optional[str] = typer.Option(None, help="Only executions of this workflow"),
    status: Optional[str] = typer.Option(None, help="Only executions in this status"),
    limit: int = typer.Option(20, help="Maximum number of executions"),
) -> None:
    """List executions, newest first."""
    executions = _run(
        lambda runtime: runtime.service.list_executions(
            workflow_id=workflow, status=status, limit=limit
        )
    )
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        typer.echo(f"{ex.id}\t{ex.workflow_id}\t{ex.status.value}\t{ex.created_at.isoformat()}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """Show an execution with its step logs."""

    async def operation(runtime: Runtime):
        execution = await runtime.service.get_execution(execution_id)
        return execution, await runtime.service.list_step_logs(execution_id)

    execution, logs = _run(operation)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")
    typer.echo(f"Trigger data: {json.dumps(execution.trigger_data, default=str)}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    for log in logs:
        typer.echo(
            f"- {log.step_id} [{log.step_kind}] attempt {log.attempt_number}: {log.status.value}"
            + (f" ({log.error})" if log.error else "")
        )


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Cancel a pending, running or paused execution."""
    execution = _run(lambda runtime: runtime.service.cancel_execution(execution_id))
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@execution_app.command("retry")
def execution_retry(execution_id: str) -> None:
    """Start a new attempt of a failed execution."""
    execution = _run(lambda runtime: runtime.service.retry_execution(execution_id))
    typer.echo(
        f"Execution {execution.id} created (attempt {execution.attempt_number}, "
        f"parent {execution.parent_execution_id})"
    )


@event_app.command("emit")
def event_emit(
    event_type: str,
    tenant: str = typer.Option(..., help="Tenant the event belongs to"),
    payload: Optional[str] = typer.Option(None, help="JSON object event payload"),
    source: Optional[str] = typer.Option(None, help="Module that emitted the event"),
    publish: bool = typer.Option(
        False, help="Publish to the transport instead of dispatching directly"
    ),
) -> None:
    """
    Emit a platform event.

    Example:
        flowkeeper event emit form.submission.received --tenant acme --payload '{"email": "a@b.com"}'
    """
    event = PlatformEvent(
        type=event_type, tenant_id=tenant, source_module=source, payload=_parse_payload(payload)
    )

    async def operation(runtime: Runtime):
        if publish:
            await runtime.transport.publish(runtime.config.transport.topic, event)
            return None
        return await runtime.dispatcher.ingest(event)

    result = _run(operation, with_transport=publish)
    if result is None:
        typer.echo(f"Published event {event.id}")
        return
    typer.echo(f"Event {event.id} created {len(result.execution_ids)} executions")
    for execution_id in result.execution_ids:
        typer.echo(f"  {execution_id}")


@schedule_app.command("tick")
def schedule_tick() -> None:
    """Fire every due schedule once."""
    result = _run(lambda runtime: runtime.dispatcher.process_schedules())
    typer.echo(f"Created {len(result.execution_ids)} executions")
    for job_id, error in result.errors.items():
        typer.secho(f"Schedule {job_id} failed: {error}", fg=typer.colors.RED)


if __name__ == "__main__":
    app()
