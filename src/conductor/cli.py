from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from conductor.backends import AgentLauncher, ClaudeCodeLauncher
from conductor.config import ConductorConfig, load_config, save_config
from conductor.lifecycle import TaskLifecycleCoordinator
from conductor.models import AgentTask, TaskStatus
from conductor.plan import PlanError, PlannedTask, launch_waves, load_plan
from conductor.repo import GitRepository

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ConductorConfig
    coordinator: TaskLifecycleCoordinator


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _build_launcher(config: ConductorConfig) -> AgentLauncher:
    return ClaudeCodeLauncher(
        config.agent.binary,
        skip_permissions=config.agent.skip_permissions,
        extra_args=config.agent.extra_args,
    )


def _echo_event(event: dict[str, Any]) -> None:
    name = event.get("event")
    if name in {"task_started", "task_finished", "retry_scheduled", "task_committed"}:
        details = ", ".join(f"{key}={value}" for key, value in event.items() if key != "event")
        click.echo(f"[{name}] {details}")


def _load_runtime(
    repo_root: Path,
    config_path: Path,
    *,
    launcher: AgentLauncher | None = None,
    verbose: bool = True,
) -> Runtime:
    config = load_config(config_path)
    repository = GitRepository(repo_root)
    coordinator = TaskLifecycleCoordinator(
        launcher or _build_launcher(config),
        config=config,
        repository=repository if repository.is_git_repo() else None,
        event_hook=_echo_event if verbose else None,
    )
    return Runtime(repo_root=repo_root, config_path=config_path, config=config, coordinator=coordinator)


def _register_plan(runtime: Runtime, planned: list[PlannedTask]) -> list[AgentTask]:
    coordinator = runtime.coordinator
    tasks: list[AgentTask] = []
    by_id = {item.id: item for item in planned}
    ordered: list[PlannedTask] = []
    for wave in launch_waves(planned):
        ordered.extend(by_id[task_id] for task_id in wave)
    for item in ordered:
        tasks.append(
            coordinator.create_task(
                item.description,
                task_id=item.id,
                project_path=str(_resolve_path(runtime.repo_root, item.project_path or ".")),
                dependency_ids=item.depends_on,
                priority=item.priority,
                priority_value=item.priority_value,
                feature_mode=item.feature_mode,
                max_iterations=item.max_iterations,
                ignore_file_locks=item.ignore_file_locks,
                no_git_write=item.no_git_write,
            )
        )
    return tasks


async def _run_plan(runtime: Runtime, planned: list[PlannedTask], timeout: float | None) -> None:
    coordinator = runtime.coordinator
    coordinator.bind_loop()
    _register_plan(runtime, planned)
    try:
        await asyncio.wait_for(coordinator.wait_until_finished(), timeout=timeout)
    finally:
        coordinator.shutdown()


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str) -> None:
    """Coordinate concurrent coding-agent tasks."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--max-parallel", type=int, default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def init_command(max_parallel: int | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_path(repo_root, config_value)
    config = load_config(config_path)
    if max_parallel is not None:
        config.scheduler.max_parallel_tasks = max_parallel
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    click.echo(f"Max parallel tasks: {config.scheduler.max_parallel_tasks}")


@cli.command("plan")
@click.argument("plan_file")
def plan_command(plan_file: str) -> None:
    repo_root = Path.cwd().resolve()
    try:
        planned = load_plan(_resolve_path(repo_root, plan_file))
    except PlanError as exc:
        raise click.ClickException(str(exc)) from exc

    for index, wave in enumerate(launch_waves(planned), start=1):
        click.echo(f"Wave {index}: {', '.join(wave)}")


@cli.command("run")
@click.argument("plan_file")
@click.option("--max-parallel", type=int, default=None)
@click.option("--timeout", type=float, default=None, help="Give up after this many seconds.")
@click.option("--auto-commit/--no-auto-commit", default=None)
@click.option("--config", "config_value", default="conductor.toml", show_default=True)
def run_command(
    plan_file: str,
    max_parallel: int | None,
    timeout: float | None,
    auto_commit: bool | None,
    config_value: str,
) -> None:
    repo_root = Path.cwd().resolve()
    try:
        planned = load_plan(_resolve_path(repo_root, plan_file))
    except PlanError as exc:
        raise click.ClickException(str(exc)) from exc

    runtime = _load_runtime(repo_root, _resolve_path(repo_root, config_value))
    if max_parallel is not None:
        runtime.config.scheduler.max_parallel_tasks = max_parallel
    if auto_commit is not None:
        runtime.config.git.auto_commit = auto_commit

    try:
        asyncio.run(_run_plan(runtime, planned, timeout))
    except TimeoutError as exc:
        raise click.ClickException(f"Run timed out after {timeout}s") from exc

    tasks = sorted(runtime.coordinator.tasks.values(), key=lambda task: task.number)
    for task in tasks:
        click.echo(f"#{task.number} {task.id}: {task.status_text}")
    if any(task.status != TaskStatus.COMPLETED for task in tasks):
        raise click.ClickException("Not every task completed")
