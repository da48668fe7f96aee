from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from forge.backends import BACKENDS, AgentBackend, ResilientBackend, RetryPolicy
from forge.config import BackendName, ForgeConfig, load_config, save_config
from forge.documents import DocumentStore
from forge.errors import ForgeError
from forge.orchestrator import AbortResult, ExecutionOrchestrator
from forge.plan import calculator
from forge.plan.parser import load_plan
from forge.state import (
    Execution,
    ExecutionRepository,
    GitSnapshotter,
    StateStore,
    StateStoreError,
    TaskAttemptRepository,
    Version,
    VersionControlError,
    VersionRepository,
)
from forge.state_machine import StateMachineError

CLI_ERRORS = (ForgeError, StateStoreError, VersionControlError, StateMachineError)
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    project_root: Path
    config_path: Path
    config: ForgeConfig
    store: StateStore
    versions: VersionRepository
    executions: ExecutionRepository
    attempts: TaskAttemptRepository
    orchestrator: ExecutionOrchestrator


def _resolve_config_path(project_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    return config_path.resolve()


def _build_backend(config: ForgeConfig) -> AgentBackend:
    primary_name: BackendName = config.backend.primary
    fallback_name: BackendName = config.backend.fallback
    for name in (primary_name, fallback_name):
        if name not in BACKENDS:
            raise click.ClickException(f"Unknown backend in config: {name}")
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=BACKENDS[primary_name](),
        fallback_name=fallback_name,
        fallback_backend=BACKENDS[fallback_name](),
        retry_policy=policy,
    )


def _echo_event(event: dict[str, Any]) -> None:
    click.echo(json.dumps(event, ensure_ascii=False))


def _load_runtime(project_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    try:
        store = StateStore(project_root / config.state.directory)
    except OSError as exc:
        raise click.ClickException(f"Cannot open state directory: {exc}") from exc
    versions = VersionRepository(store)
    executions = ExecutionRepository(store)
    attempts = TaskAttemptRepository(store)
    orchestrator = ExecutionOrchestrator(
        versions,
        executions,
        attempts,
        _build_backend(config),
        config,
        vcs=GitSnapshotter(excludes=(config.state.directory,)),
        event_hook=_echo_event,
    )
    return Runtime(
        project_root=project_root,
        config_path=config_path,
        config=config,
        store=store,
        versions=versions,
        executions=executions,
        attempts=attempts,
        orchestrator=orchestrator,
    )


def _runtime(config_value: str) -> Runtime:
    project_root = Path.cwd().resolve()
    return _load_runtime(project_root, _resolve_config_path(project_root, config_value))


def _resolve_version(runtime: Runtime, version_id: str | None) -> Version:
    if version_id:
        version = runtime.versions.get(version_id)
        if version is None:
            raise click.ClickException(f"Version not found: {version_id}")
        return version
    versions = runtime.versions.list_all()
    if not versions:
        raise click.ClickException("No version registered. Run `forge init` first.")
    return versions[-1]


def _active_execution(runtime: Runtime, version: Version) -> Execution:
    execution = runtime.executions.find_running_or_paused(version.id)
    if execution is None:
        raise click.ClickException(f"No running or paused execution for version {version.name}.")
    return execution


async def _drive(
    orchestrator: ExecutionOrchestrator, execution_id: str, exit_on_pause: bool
) -> None:
    """Run one loop in the foreground, optionally returning as soon as it pauses."""
    running: list[asyncio.Task[None]] = []
    if exit_on_pause:
        forward = orchestrator.event_hook

        def _hook(event: dict[str, Any]) -> None:
            if forward is not None:
                forward(event)
            if event["event"] == "paused" and event["execution_id"] == execution_id:
                for loop_task in running:
                    loop_task.cancel()

        orchestrator.event_hook = _hook
    task = orchestrator.launch(execution_id)
    running.append(task)
    try:
        await task
    except asyncio.CancelledError:
        if not task.cancelled():
            raise


def _print_execution(runtime: Runtime, execution_id: str) -> None:
    execution = runtime.executions.get(execution_id)
    if execution is None:
        return
    click.echo(
        f"Execution {execution.id}: {execution.status} "
        f"({execution.completed_tasks}/{execution.total_tasks} tasks)"
    )


def _print_abort(result: AbortResult) -> None:
    click.echo(f"Execution {result.execution.id} aborted.")
    if result.rollback_failed:
        click.echo(
            f"Warning: rollback failed, working tree may be partial: {result.rollback_error}",
            err=True,
        )


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Forge execution orchestrator."""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)


@cli.command("init")
@click.option("--version-name", default=None, help="Name for the registered version.")
@click.option("--ready", is_flag=True, default=False, help="Register the version as ready.")
@click.option("--backend", type=click.Choice(sorted(BACKENDS)), default=None)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def init_command(
    version_name: str | None, ready: bool, backend: str | None, config_value: str
) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    if config.project.name == ForgeConfig.default().project.name:
        config.project.name = project_root.name
    save_config(config_path, config)

    runtime = _load_runtime(project_root, config_path)
    try:
        version = runtime.versions.create(
            str(project_root),
            version_name or config.project.name,
            dev_status="ready" if ready else "reviewing",
        )
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized Forge in {project_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary}")
    click.echo(f"Version: {version.id} ({version.name}, {version.dev_status})")


@cli.command("approve")
@click.option("--version-id", default=None)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def approve_command(version_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    version = _resolve_version(runtime, version_id)
    try:
        target = runtime.orchestrator.dev_flow.transition(version.dev_status, "APPROVE")
        runtime.versions.update_status(version.id, dev_status=target)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Version {version.name} is {target}.")


@cli.command("plan")
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def plan_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    project = runtime.config.project
    documents = DocumentStore(runtime.project_root)
    plan = load_plan(documents, project.todo_path, project.milestones_path)
    result = calculator.next_task(plan)
    progress = calculator.progress(plan)
    payload = {
        "next": {
            "reason": result.reason,
            "task_id": result.task.id if result.task else None,
            "milestone_id": result.milestone.id if result.milestone else None,
            "blocked_by": list(result.blocked_by),
        },
        "progress": {
            "completed": progress.completed,
            "total": progress.total,
            "percent": progress.percent,
        },
        "blocked": [
            {"task_id": item.task.id, "blocked_by": item.blocked_by}
            for item in calculator.blocked_tasks(plan)
        ],
        "issues": list(plan.issues),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("start")
@click.option("--version-id", default=None)
@click.option(
    "--exit-on-pause",
    is_flag=True,
    default=False,
    help="Return when the execution pauses instead of waiting for an operator.",
)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def start_command(version_id: str | None, exit_on_pause: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    version = _resolve_version(runtime, version_id)
    try:
        execution = runtime.orchestrator.start_execution(version.id)
        asyncio.run(_drive(runtime.orchestrator, execution.id, exit_on_pause))
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _print_execution(runtime, execution.id)


@cli.command("pause")
@click.option("--version-id", default=None)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def pause_command(version_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    execution = _active_execution(runtime, _resolve_version(runtime, version_id))
    try:
        runtime.orchestrator.pause(execution.id)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Execution {execution.id} paused.")


@cli.command("resume")
@click.option("--version-id", default=None)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def resume_command(version_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    execution = _active_execution(runtime, _resolve_version(runtime, version_id))
    try:
        runtime.orchestrator.resume(execution.id)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Execution {execution.id} resumed.")


@cli.command("abort")
@click.option("--version-id", default=None)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def abort_command(version_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    execution = _active_execution(runtime, _resolve_version(runtime, version_id))
    try:
        result = runtime.orchestrator.abort(execution.id)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    _print_abort(result)


@cli.command("retry")
@click.argument("task_id")
@click.option("--version-id", default=None)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def retry_command(task_id: str, version_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    execution = _active_execution(runtime, _resolve_version(runtime, version_id))
    try:
        runtime.orchestrator.retry_task(execution.id, task_id)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task_id} queued for retry.")


@cli.command("skip")
@click.argument("task_id")
@click.option("--version-id", default=None)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def skip_command(task_id: str, version_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    execution = _active_execution(runtime, _resolve_version(runtime, version_id))
    try:
        runtime.orchestrator.skip_task(execution.id, task_id)
    except CLI_ERRORS as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task {task_id} skipped.")


@cli.command("status")
@click.option("--version-id", default=None)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def status_command(version_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    version = _resolve_version(runtime, version_id)
    executions = runtime.executions.find_by_version(version.id)
    if not executions:
        payload: dict[str, Any] = {"version": version.to_dict(), "execution": None}
    else:
        try:
            payload = runtime.orchestrator.status(executions[0].id)
        except CLI_ERRORS as exc:
            raise click.ClickException(str(exc)) from exc
        payload["version"] = version.to_dict()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("stale")
@click.option("--resume", "resume_id", default=None, help="Restart the loop for this execution.")
@click.option("--abort", "abort_id", default=None, help="Abort this execution.")
@click.option("--exit-on-pause", is_flag=True, default=False)
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def stale_command(
    resume_id: str | None, abort_id: str | None, exit_on_pause: bool, config_value: str
) -> None:
    runtime = _runtime(config_value)
    if resume_id and abort_id:
        raise click.ClickException("Choose either --resume or --abort, not both.")

    if abort_id:
        try:
            result = asyncio.run(runtime.orchestrator.recover(abort_id, "abort"))
        except CLI_ERRORS as exc:
            raise click.ClickException(str(exc)) from exc
        if isinstance(result, AbortResult):
            _print_abort(result)
        return

    if resume_id:

        async def _resume() -> None:
            await runtime.orchestrator.recover(resume_id, "resume")
            await _drive(runtime.orchestrator, resume_id, exit_on_pause)

        try:
            asyncio.run(_resume())
        except CLI_ERRORS as exc:
            raise click.ClickException(str(exc)) from exc
        _print_execution(runtime, resume_id)
        return

    stale = runtime.orchestrator.find_stale()
    if not stale:
        click.echo("No stale executions.")
        return
    for execution in stale:
        click.echo(
            f"{execution.id} {execution.status:<7} "
            f"{execution.completed_tasks}/{execution.total_tasks} "
            f"current={execution.current_task_id or '-'}"
        )


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(sorted(BACKENDS)))
@click.option("--config", "config_value", default="forge.toml", show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    project_root = Path.cwd().resolve()
    config_path = _resolve_config_path(project_root, config_value)
    config = load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
