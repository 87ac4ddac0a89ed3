from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from stagequeue.config import QueueConfig, SpawnerName, load_config, save_config
from stagequeue.errors import QueueError
from stagequeue.events import EventHook, EventLog, fanout, format_event
from stagequeue.executor import StageExecutor
from stagequeue.graph import topological_sort, validate_workflow, validate_workflow_data
from stagequeue.models import WorkflowDefinition, WorkflowResult
from stagequeue.recovery import RecoveryAdvisor
from stagequeue.resources import (
    cleanup_workflow_outputs,
    format_bytes,
    resource_report,
    validate_workflow_resources,
)
from stagequeue.runner import WorkflowRunner
from stagequeue.scheduler import WorkflowScheduler
from stagequeue.sessions import SessionWaiter
from stagequeue.spawners import (
    AgentSpawner,
    FallbackSpawner,
    OpenAISpawner,
    OpenClawSessionMonitor,
    OpenClawSpawner,
    SessionMonitor,
)
from stagequeue.state import GitCommitter, WorkflowState, WorkflowStateStore

EXAMPLE_WORKFLOW: dict[str, Any] = {
    "name": "example-workflow",
    "stages": [
        {
            "name": "phase1",
            "task": (
                "Create a sample document with three sections: "
                "introduction, body, and conclusion."
            ),
            "dependencies": [],
            "kind": "documentation",
        },
        {
            "name": "phase2",
            "task": (
                "Review and expand the document from phase1 ({source}). "
                "Add more details to each section."
            ),
            "dependencies": ["phase1"],
            "contextFrom": {"source": "phase1.file"},
            "kind": "documentation",
        },
        {
            "name": "phase3",
            "task": "Finalize the document ({draft}). Check for consistency and format properly.",
            "dependencies": ["phase2"],
            "contextFrom": {"draft": "phase2.file"},
            "kind": "documentation",
        },
    ],
    "stopOnError": True,
    "retryOnFailure": 0,
}


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: QueueConfig
    store: WorkflowStateStore
    events: EventLog


def _resolve_path(root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = root / path
    return path.resolve()


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    state_directory = _resolve_path(root, config.state.directory)
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        store=WorkflowStateStore(state_directory),
        events=EventLog(state_directory / "events.jsonl"),
    )


def _echo_event(event: dict[str, Any]) -> None:
    click.echo(format_event(event), err=True)


def _build_single_spawner(
    name: SpawnerName, config: QueueConfig, root: Path, event_hook: EventHook
) -> AgentSpawner:
    if name == "openclaw":
        return OpenClawSpawner(
            config.spawner.binary,
            local=config.spawner.local,
            working_directory=root,
            event_hook=event_hook,
        )
    return OpenAISpawner(model=config.spawner.model)


def _build_spawner(config: QueueConfig, root: Path, event_hook: EventHook) -> AgentSpawner:
    primary = _build_single_spawner(config.spawner.primary, config, root, event_hook)
    fallback = None
    if config.spawner.fallback != config.spawner.primary:
        fallback = _build_single_spawner(config.spawner.fallback, config, root, event_hook)
    return FallbackSpawner(primary, fallback, event_hook=event_hook)


def _build_monitor(config: QueueConfig, root: Path) -> SessionMonitor | None:
    if "openclaw" not in {config.spawner.primary, config.spawner.fallback}:
        return None
    return OpenClawSessionMonitor(config.spawner.binary, working_directory=root)


def _build_runner(runtime: Runtime, workflow: WorkflowDefinition, verbose: bool) -> WorkflowRunner:
    config = runtime.config
    hook = fanout(runtime.events, _echo_event if verbose else None)
    working_directory = workflow.working_directory

    monitor = _build_monitor(config, runtime.root)
    waiter = None
    if monitor is not None:
        waiter = SessionWaiter(
            monitor,
            poll_interval_seconds=config.execution.poll_interval_seconds,
            inactive_seconds=config.execution.session_inactive_seconds,
            abandon_seconds=config.execution.abandon_inactive_seconds,
            event_hook=hook,
        )
    committer = None
    if config.git.enabled:
        committer = GitCommitter(
            working_directory,
            author_name=config.git.author_name,
            author_email=config.git.author_email,
            fix_log_reference=config.git.fix_log_reference,
            event_hook=hook,
        )
    advisor = RecoveryAdvisor(
        timeout_multiplier=config.recovery.timeout_multiplier,
        backoff_base_seconds=config.recovery.backoff_base_seconds,
        backoff_cap_seconds=config.recovery.backoff_cap_seconds,
        error_log_directory=working_directory / config.recovery.error_log_directory,
        event_hook=hook,
    )
    executor = StageExecutor(
        _build_spawner(config, runtime.root, hook),
        session_waiter=waiter,
        committer=committer,
        advisor=advisor,
        evidence=config.evidence,
        retry_delay_seconds=config.execution.retry_delay_seconds,
        cleanup=lambda: cleanup_workflow_outputs(
            working_directory, config.resources.output_retention_days / 2
        ),
        event_hook=hook,
    )
    scheduler = WorkflowScheduler(executor, state_store=runtime.store, event_hook=hook)
    return WorkflowRunner(
        scheduler,
        state_store=runtime.store,
        limits=config.resources,
        cleanup_outputs=config.resources.auto_cleanup_outputs,
        event_hook=hook,
    )


def _workflow_from_data(data: Any, runtime: Runtime) -> WorkflowDefinition:
    errors = validate_workflow_data(data)
    if errors:
        raise click.ClickException("Invalid workflow: " + "; ".join(errors))
    return WorkflowDefinition.from_dict(
        data, defaults=runtime.config.execution, base_directory=runtime.root
    )


def _load_workflow(path: Path, runtime: Runtime) -> WorkflowDefinition:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise click.ClickException(f"Error loading workflow: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Error loading workflow: invalid JSON ({exc})") from exc
    return _workflow_from_data(data, runtime)


def _parse_context(pairs: tuple[str, ...]) -> dict[str, str]:
    context: dict[str, str] = {}
    for pair in pairs:
        key, separator, value = pair.partition("=")
        if not separator or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--context")
        context[key] = value
    return context


def _resolve_state(runtime: Runtime, name_or_id: str) -> WorkflowState:
    try:
        state = runtime.store.resolve(name_or_id)
    except QueueError as exc:
        raise click.ClickException(str(exc)) from exc
    if state is None:
        raise click.ClickException(f"No workflow state found for: {name_or_id}")
    return state


def _report_result(result: WorkflowResult, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    else:
        click.echo(f"Workflow: {result.workflow}")
        if result.workflow_id:
            click.echo(f"Workflow ID: {result.workflow_id}")
        completed = sum(1 for stage in result.stages.values() if stage.status == "complete")
        click.echo(f"Stages: {completed}/{len(result.execution_order)} complete")
        for name in result.execution_order:
            stage = result.stages.get(name)
            click.echo(f"  {name:<24} {stage.status if stage else 'not run'}")
        if result.iteration is not None:
            click.echo(
                f"Iteration: {result.iteration.status} "
                f"({result.iteration.current + 1}/{result.iteration.max})"
            )
        click.echo(f"Duration: {result.total_duration:.1f}s")

    if result.halted:
        raise click.ClickException(f"Workflow halted: {result.halted}")
    if not result.success:
        failed = result.stages.get(result.failed_stage or "")
        detail = (failed.error or {}).get("last_error") if failed else None
        message = f"Workflow failed at stage {result.failed_stage}"
        raise click.ClickException(f"{message}: {detail}" if detail else message)


@click.group()
def cli() -> None:
    """stagequeue CLI."""


@cli.command("init")
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def init_command(config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_path(root, config_value)
    config = load_config(config_path)
    save_config(config_path, config)
    state_directory = _resolve_path(root, config.state.directory)
    state_directory.mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized stagequeue in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Spawner: {config.spawner.primary} (fallback: {config.spawner.fallback})")
    click.echo(f"State directory: {state_directory}")


@cli.command("validate")
@click.argument("workflow_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def validate_command(workflow_file: Path, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    workflow = _load_workflow(workflow_file, runtime)
    errors = validate_workflow(workflow)
    if errors:
        raise click.ClickException("Workflow validation failed: " + "; ".join(errors))

    click.echo("Workflow is valid")
    click.echo(f"  Stages: {len(workflow.stages)}")
    click.echo(f"  Execution order: {' -> '.join(topological_sort(workflow.stages))}")
    click.echo(f"  Stop on error: {workflow.stop_on_error}")
    click.echo(f"  Retries: {workflow.retry_on_failure}")
    for warning in validate_workflow_resources(workflow, runtime.config.resources).warnings:
        click.echo(f"  Warning: {warning}")


@cli.command("run")
@click.argument("workflow_file", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--context", "context_pairs", multiple=True, metavar="KEY=VALUE")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def run_command(
    workflow_file: Path,
    context_pairs: tuple[str, ...],
    as_json: bool,
    verbose: bool,
    config_value: str,
) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    workflow = _load_workflow(workflow_file, runtime)
    runner = _build_runner(runtime, workflow, verbose)
    try:
        result = asyncio.run(
            runner.run(
                workflow,
                _parse_context(context_pairs),
                metadata={"workflow_file": str(workflow_file.resolve())},
            )
        )
    except QueueError as exc:
        raise click.ClickException(str(exc)) from exc
    _report_result(result, as_json)


@cli.command("example")
@click.option("--print", "print_only", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def example_command(print_only: bool, verbose: bool, config_value: str) -> None:
    if print_only:
        click.echo(json.dumps(EXAMPLE_WORKFLOW, ensure_ascii=False, indent=2))
        return

    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    workflow = _workflow_from_data(EXAMPLE_WORKFLOW, runtime)
    runner = _build_runner(runtime, workflow, verbose)
    click.echo("Running example workflow...")
    try:
        result = asyncio.run(runner.run(workflow))
    except QueueError as exc:
        raise click.ClickException(str(exc)) from exc
    _report_result(result, as_json=False)


@cli.command("status")
@click.argument("name_or_id")
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def status_command(name_or_id: str, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    state = _resolve_state(runtime, name_or_id)
    payload = runtime.store.status(state.workflow_id)
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("list")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def list_command(as_json: bool, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    states = runtime.store.list_states()
    if as_json:
        click.echo(json.dumps(states, ensure_ascii=False, indent=2))
        return
    if not states:
        click.echo("No workflow states found.")
        return
    for item in states:
        progress = item["progress"]
        click.echo(
            f"{item['workflow_id']} {item['status']:<9} {item['workflow_name']} "
            f"{progress['completed_stages']}/{progress['total_stages']}"
        )


@cli.command("resume")
@click.argument("workflow_id")
@click.argument("workflow_file", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def resume_command(
    workflow_id: str,
    workflow_file: Path | None,
    as_json: bool,
    verbose: bool,
    config_value: str,
) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    state = _resolve_state(runtime, workflow_id)
    if workflow_file is None:
        recorded = state.metadata.get("workflow_file")
        if not recorded:
            raise click.ClickException(
                f"Workflow {state.workflow_id} has no recorded workflow file; pass one explicitly."
            )
        workflow_file = Path(recorded)
    workflow = _load_workflow(workflow_file, runtime)
    runner = _build_runner(runtime, workflow, verbose)
    try:
        result = asyncio.run(runner.resume(state.workflow_id, workflow))
    except QueueError as exc:
        raise click.ClickException(str(exc)) from exc
    _report_result(result, as_json)


@cli.command("cancel")
@click.argument("name_or_id")
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def cancel_command(name_or_id: str, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    state = _resolve_state(runtime, name_or_id)
    if not runtime.store.cancel(state.workflow_id):
        raise click.ClickException(
            f"Workflow {state.workflow_id} cannot be cancelled (status: {state.status})"
        )
    click.echo(f"Cancelled {state.workflow_id}")


@cli.command("pause")
@click.argument("name_or_id")
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def pause_command(name_or_id: str, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    state = _resolve_state(runtime, name_or_id)
    if not runtime.store.pause(state.workflow_id):
        raise click.ClickException(
            f"Workflow {state.workflow_id} cannot be paused (status: {state.status})"
        )
    click.echo(f"Paused {state.workflow_id}")


@cli.command("cleanup")
@click.argument("days", required=False, type=float)
@click.option("--outputs", "include_outputs", is_flag=True, default=False)
@click.option("--config", "config_value", default="stagequeue.toml", show_default=True)
def cleanup_command(days: float | None, include_outputs: bool, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_path(root, config_value))
    retention = runtime.config.state.retention_days if days is None else days
    stats = runtime.store.cleanup(retention)
    click.echo(
        f"Deleted {stats.deleted_states}/{stats.total_states} workflow states "
        f"({format_bytes(stats.bytes_freed)})"
    )
    if include_outputs:
        output_stats = cleanup_workflow_outputs(root, runtime.config.resources.output_retention_days)
        click.echo(
            f"Deleted {output_stats.files_deleted}/{output_stats.files_scanned} output files "
            f"({format_bytes(output_stats.bytes_freed)})"
        )


@cli.command("resource-report")
def resource_report_command() -> None:
    report = resource_report(Path.cwd().resolve())
    click.echo(json.dumps(report, ensure_ascii=False, indent=2))


def main() -> None:
    cli()
