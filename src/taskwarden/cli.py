from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskwarden import __version__
from taskwarden.config import WardenConfig, load_config, save_config
from taskwarden.errors import ConfigError, WardenError
from taskwarden.executors import CommandExecutor, CommandQualityChecker, Executor, QualityChecker
from taskwarden.models import ExecutionSession, Task
from taskwarden.store import StateStore
from taskwarden.supervisor import Supervisor

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: WardenConfig
    store: StateStore
    supervisor: Supervisor


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _build_executor(config: WardenConfig, repo_root: Path) -> Executor:
    return CommandExecutor(
        config.executor.kind,
        binary=config.executor.binary or None,
        working_directory=_resolve_path(repo_root, config.executor.working_directory),
    )


def _build_quality_checker(config: WardenConfig, repo_root: Path) -> QualityChecker | None:
    if not (config.quality.lint_command or config.quality.test_command):
        return None
    return CommandQualityChecker(
        lint_command=config.quality.lint_command,
        test_command=config.quality.test_command,
        working_directory=_resolve_path(repo_root, config.executor.working_directory),
        min_quality_score=config.supervision.min_quality_score,
        min_test_coverage=config.supervision.min_test_coverage,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    store = StateStore(_resolve_path(repo_root, config.state.directory))
    supervisor = Supervisor(
        _build_executor(config, repo_root),
        config=config.supervision,
        quality_checker=_build_quality_checker(config, repo_root),
        store=store,
    )
    try:
        supervisor.load()
    except WardenError as exc:
        raise click.ClickException(str(exc)) from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        supervisor=supervisor,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_path(repo_root, config_value))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _read_task_file(path: Path) -> list[Task]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise click.ClickException(f"Could not read tasks from {path}: {exc}") from exc
    items = payload.get("tasks", []) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise click.ClickException("Task file must contain a list of tasks.")
    try:
        return [Task.from_dict(item) for item in items if isinstance(item, dict)]
    except (TypeError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _session_line(session: ExecutionSession) -> str:
    return (
        f"{session.session_id} {session.task_id:<8} {session.status:<9} "
        f"retries={session.retry_count}/{session.max_retries} errors={len(session.errors)}"
    )


@click.group()
@click.version_option(__version__, prog_name="taskwarden")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Taskwarden task dependency and execution supervisor."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--executor", "executor_kind", type=click.Choice(["claude", "codex"]), default=None)
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def init_command(executor_kind: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    try:
        config = load_config(config_path)
        if executor_kind:
            config.executor.kind = executor_kind  # type: ignore[assignment]
        save_config(config_path, config)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    runtime = _load_runtime(repo_root, config_path)
    runtime.supervisor.save()
    click.echo(f"Initialized taskwarden in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {runtime.store.directory}")
    click.echo(f"Executor: {config.executor.kind}")


@cli.command("import")
@click.argument("task_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def import_command(task_file: Path, config_value: str) -> None:
    runtime = _runtime(config_value)
    tasks = _read_task_file(task_file)
    try:
        graph = runtime.supervisor.import_tasks(tasks)
    except WardenError as exc:
        raise click.ClickException(str(exc)) from exc
    implicit = sum(1 for edge in graph.edges if edge.implicit)
    click.echo(f"Imported {len(tasks)} task(s); {len(graph.nodes)} total.")
    click.echo(f"Dependencies: {len(graph.edges)} ({implicit} implicit)")
    click.echo(f"Order: {' -> '.join(graph.order)}")


@cli.command("tasks")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def tasks_command(as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    tasks = runtime.supervisor.ordered_tasks()
    if as_json:
        _echo_json([task.to_dict() for task in tasks])
        return
    if not tasks:
        click.echo("No tasks imported.")
        return
    for task in tasks:
        depends = ",".join(task.depends_on) or "-"
        click.echo(
            f"{task.id:<8} {task.status:<11} {task.priority} {task.category:<10} "
            f"{task.name} (after: {depends})"
        )


@cli.command("plan")
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def plan_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        plan = runtime.supervisor.plan()
    except WardenError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.supervisor.save()
    _echo_json(plan.to_dict())


@cli.command("run")
@click.argument("task_ids", nargs=-1)
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def run_command(task_ids: tuple[str, ...], config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        summary = asyncio.run(runtime.supervisor.run(list(task_ids) or None))
    except WardenError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Completed: {len(summary.completed_tasks)}/{summary.total_tasks}")
    if summary.failed_tasks:
        click.echo(f"Failed: {', '.join(summary.failed_tasks)}")
    if summary.blocked_tasks:
        click.echo(f"Blocked: {', '.join(summary.blocked_tasks)}")
    click.echo(f"Health: {runtime.supervisor.status().system_health}")


@cli.command("start")
@click.argument("task_id")
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def start_command(task_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)

    async def _start_and_wait() -> ExecutionSession:
        session = await runtime.supervisor.start(task_id)
        finished = await runtime.supervisor.wait(session.session_id)
        await runtime.supervisor.flush()
        return finished

    try:
        session = asyncio.run(_start_and_wait())
    except WardenError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_session_line(session))
    if session.status != "completed":
        raise click.ClickException(f"Task {task_id} ended {session.status}.")


@cli.command("cancel")
@click.argument("session_id")
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def cancel_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        session = runtime.supervisor.cancel(session_id)
    except WardenError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Cancelled {session.session_id}; {session.task_id} is pending again.")


@cli.command("status")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def status_command(as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    status = runtime.supervisor.status()
    if as_json:
        _echo_json(status.to_dict())
        return
    click.echo(f"Health: {status.system_health}")
    click.echo(
        "Tasks: "
        + ", ".join(f"{name}={count}" for name, count in status.counts.items())
        + f" (total {status.total_tasks})"
    )
    click.echo(f"Active sessions: {len(status.active_sessions)}")
    click.echo(f"Average duration: {status.average_task_duration:.1f}s")
    click.echo(f"Estimated remaining: {status.estimated_time_remaining:.1f}s")
    click.echo(f"Average quality: {status.average_quality_score:.1f}")
    click.echo(f"Issues: {status.total_issues}")


@cli.command("session")
@click.argument("session_id")
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def session_command(session_id: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        session = runtime.supervisor.get_session(session_id)
    except WardenError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(session.to_dict())


@cli.command("sessions")
@click.option("--task", "task_id", default=None)
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def sessions_command(task_id: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        sessions = (
            runtime.supervisor.task_sessions(task_id)
            if task_id
            else runtime.supervisor.list_sessions()
        )
    except WardenError as exc:
        raise click.ClickException(str(exc)) from exc
    if not sessions:
        click.echo("No sessions recorded.")
        return
    for session in sessions:
        click.echo(_session_line(session))


@cli.command("rules")
@click.option("--config", "config_value", default="taskwarden.toml", show_default=True)
def rules_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    _echo_json([rule.to_dict() for rule in runtime.supervisor.rules])


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
