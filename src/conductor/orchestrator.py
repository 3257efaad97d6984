from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from conductor.events import EventHook
from conductor.models import AgentTask

logger = logging.getLogger(__name__)


def priority_key(task: AgentTask) -> tuple[int, int]:
    return (-int(task.priority), -task.priority_value)


@dataclass(slots=True)
class DependencyNode:
    task_id: str
    task: AgentTask | None = None
    unresolved: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)
    resolved: bool = False

    @property
    def is_ready(self) -> bool:
        return self.task is not None and not self.resolved and not self.unresolved


class TaskOrchestrator:
    """In-memory dependency DAG that decides which tasks may start.

    Dependency ids that are not registered yet get placeholder nodes so
    reverse edges exist before the dependency itself is added.
    ``on_task_completed`` and ``reevaluate_all`` re-fire ``task_ready`` for
    every dependent that is still ready and unresolved; callers resolve a
    task (usually by starting it) right after it is announced.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, DependencyNode] = {}
        self.task_ready = EventHook("task_ready")

    def _get_or_create(self, task_id: str) -> DependencyNode:
        node = self._nodes.get(task_id)
        if node is None:
            node = DependencyNode(task_id=task_id)
            self._nodes[task_id] = node
        return node

    def add_task(self, task: AgentTask, dependency_ids: Iterable[str] = ()) -> None:
        node = self._get_or_create(task.id)
        node.task = task
        for dependency_id in dependency_ids:
            self._get_or_create(dependency_id).dependents.add(task.id)
            node.unresolved.add(dependency_id)

    def get_next_runnable_tasks(self, max_count: int) -> list[AgentTask]:
        if max_count <= 0:
            return []
        return self._ready_tasks()[:max_count]

    def _ready_tasks(self) -> list[AgentTask]:
        ready = [node.task for node in self._nodes.values() if node.is_ready]
        return sorted(ready, key=priority_key)  # type: ignore[arg-type]

    def on_task_completed(self, task_id: str) -> None:
        node = self._nodes.get(task_id)
        if node is None:
            return
        node.resolved = True

        now_ready: list[AgentTask] = []
        for dependent_id in node.dependents:
            dependent = self._nodes.get(dependent_id)
            if dependent is None:
                continue
            dependent.unresolved.discard(task_id)
            if dependent.is_ready:
                now_ready.append(dependent.task)  # type: ignore[arg-type]

        now_ready.sort(key=priority_key)
        if now_ready:
            logger.debug(
                "Task %s completed; ready: %s", task_id, ", ".join(task.id for task in now_ready)
            )
        for task in now_ready:
            self.task_ready.emit(task)

    def mark_resolved(self, task_id: str) -> None:
        node = self._nodes.get(task_id)
        if node is not None:
            node.resolved = True

    def reevaluate_all(self) -> None:
        for task in self._ready_tasks():
            self.task_ready.emit(task)

    def detect_cycle(self, source_id: str, target_id: str) -> bool:
        """True if making ``target_id`` depend on ``source_id`` would close a loop."""
        visited: set[str] = set()
        queue: deque[str] = deque([target_id])
        while queue:
            current = queue.popleft()
            if current == source_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            node = self._nodes.get(current)
            if node is not None:
                queue.extend(node.dependents)
        return False

    def remove_task(self, task_id: str) -> None:
        node = self._nodes.pop(task_id, None)
        if node is None:
            return
        for dependency_id in node.unresolved:
            dependency = self._nodes.get(dependency_id)
            if dependency is not None:
                dependency.dependents.discard(task_id)
        for dependent_id in node.dependents:
            dependent = self._nodes.get(dependent_id)
            if dependent is not None:
                dependent.unresolved.discard(task_id)

    def contains_task(self, task_id: str) -> bool:
        return task_id in self._nodes

    def unresolved_dependencies(self, task_id: str) -> set[str]:
        node = self._nodes.get(task_id)
        return set(node.unresolved) if node is not None else set()

    def is_resolved(self, task_id: str) -> bool:
        node = self._nodes.get(task_id)
        return node is not None and node.resolved

    def __len__(self) -> int:
        return len(self._nodes)
