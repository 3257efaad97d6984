from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from conductor.models import AgentTask, TaskPriority
from conductor.orchestrator import TaskOrchestrator


class PlanError(RuntimeError):
    """Raised when a task plan is malformed."""


@dataclass(slots=True)
class PlannedTask:
    id: str
    description: str
    depends_on: list[str] = field(default_factory=list)
    priority: TaskPriority = TaskPriority.NORMAL
    priority_value: int = 0
    feature_mode: bool = False
    max_iterations: int | None = None
    ignore_file_locks: bool = False
    no_git_write: bool = False
    project_path: str | None = None


def _parse_priority(value: Any, task_id: str) -> TaskPriority:
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return TaskPriority(value)
        except ValueError as exc:
            raise PlanError(f"Task {task_id}: unknown priority {value}") from exc
    try:
        return TaskPriority[str(value).upper()]
    except KeyError as exc:
        raise PlanError(f"Task {task_id}: unknown priority {value!r}") from exc


def _parse_int(value: Any, field_name: str, task_id: str) -> int:
    if isinstance(value, bool):
        raise PlanError(f"Task {task_id}: {field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise PlanError(f"Task {task_id}: {field_name} must be an integer") from exc


def parse_plan(data: dict[str, Any]) -> list[PlannedTask]:
    entries = data.get("tasks")
    if not isinstance(entries, list) or not entries:
        raise PlanError("Plan must define at least one [[tasks]] entry")

    planned: list[PlannedTask] = []
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise PlanError(f"Task entry {index} is not a table")
        task_id = str(entry.get("id") or f"task-{index}")
        description = str(entry.get("description") or "").strip()
        if not description:
            raise PlanError(f"Task {task_id}: description is required")
        depends_on = entry.get("depends_on", [])
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list):
            raise PlanError(f"Task {task_id}: depends_on must be a list")
        max_iterations = entry.get("max_iterations")
        planned.append(
            PlannedTask(
                id=task_id,
                description=description,
                depends_on=[str(item) for item in depends_on],
                priority=_parse_priority(entry.get("priority", "normal"), task_id),
                priority_value=_parse_int(entry.get("priority_value", 0), "priority_value", task_id),
                feature_mode=bool(entry.get("feature_mode", False)),
                max_iterations=(
                    _parse_int(max_iterations, "max_iterations", task_id)
                    if max_iterations is not None
                    else None
                ),
                ignore_file_locks=bool(entry.get("ignore_file_locks", False)),
                no_git_write=bool(entry.get("no_git_write", False)),
                project_path=entry.get("project_path"),
            )
        )
    validate_plan(planned)
    return planned


def validate_plan(planned: list[PlannedTask]) -> None:
    ids = [task.id for task in planned]
    duplicates = sorted({task_id for task_id in ids if ids.count(task_id) > 1})
    if duplicates:
        raise PlanError(f"Duplicate task ids: {', '.join(duplicates)}")
    known = set(ids)
    for task in planned:
        unknown = [dep for dep in task.depends_on if dep not in known]
        if unknown:
            raise PlanError(f"Task {task.id} depends on unknown task(s): {', '.join(unknown)}")
    _build_graph(planned)


def _build_graph(planned: list[PlannedTask]) -> TaskOrchestrator:
    orchestrator = TaskOrchestrator()
    for number, item in enumerate(planned, start=1):
        for dependency_id in item.depends_on:
            if orchestrator.detect_cycle(dependency_id, item.id):
                raise PlanError(f"Dependency cycle: {item.id} -> {dependency_id}")
        task = AgentTask(
            id=item.id,
            number=number,
            description=item.description,
            priority=item.priority,
            priority_value=item.priority_value,
        )
        orchestrator.add_task(task, item.depends_on)
    return orchestrator


def launch_waves(planned: list[PlannedTask]) -> list[list[str]]:
    """Task ids grouped by the round in which they become runnable."""
    orchestrator = _build_graph(planned)
    waves: list[list[str]] = []
    while True:
        ready = orchestrator.get_next_runnable_tasks(len(planned))
        if not ready:
            break
        waves.append([task.id for task in ready])
        for task in ready:
            orchestrator.mark_resolved(task.id)
        for task in ready:
            orchestrator.on_task_completed(task.id)
    return waves


def load_plan(path: Path) -> list[PlannedTask]:
    if not path.exists():
        raise PlanError(f"Plan file not found: {path}")
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise PlanError(f"Invalid plan file {path}: {exc}") from exc
    return parse_plan(data)
