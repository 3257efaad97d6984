from __future__ import annotations

import logging
import posixpath
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from conductor.events import EventHook
from conductor.models import AgentTask, TaskStatus

logger = logging.getLogger(__name__)

NotifySink = Callable[[str, str], None]

FILE_MODIFY_TOOLS = frozenset({"write", "edit", "multiedit", "notebookedit"})
PARTIAL_FILE_PATH_PATTERN = re.compile(r'"file_path"\s*:\s*"([^"]+)"')
DRIVE_PATTERN = re.compile(r"^[A-Za-z]:/")


def _is_absolute(path: str) -> bool:
    return path.startswith("/") or bool(DRIVE_PATTERN.match(path))


def normalize_path(path: str | None, base_path: str | None = None) -> str:
    """Lock key for ``path``: forward slashes, no trailing slash, lowercase.

    Relative paths are joined onto ``base_path`` (the task's project root).
    """
    if path is None or not path.strip():
        return ""
    candidate = path.strip().replace("\\", "/")
    if base_path and not _is_absolute(candidate):
        candidate = posixpath.join(base_path.replace("\\", "/"), candidate)
    candidate = posixpath.normpath(candidate)
    return (candidate.rstrip("/") or candidate).lower()


def file_name(path: str) -> str:
    return posixpath.basename(path.replace("\\", "/").rstrip("/"))


def is_file_modify_tool(tool_name: str | None) -> bool:
    return bool(tool_name) and tool_name.lower() in FILE_MODIFY_TOOLS  # type: ignore[union-attr]


def extract_file_path(tool_input: Mapping[str, Any] | None) -> str | None:
    if not tool_input:
        return None
    for key in ("file_path", "path"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def try_extract_file_path_from_partial(partial_json: str) -> str | None:
    match = PARTIAL_FILE_PATH_PATTERN.search(partial_json)
    return match.group(1) if match else None


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True)
class FileLock:
    path: str
    original_path: str
    owner_task_id: str
    tool_name: str
    acquired_at: datetime = field(default_factory=_now)
    is_ignored: bool = False


@dataclass(slots=True)
class QueuedTaskInfo:
    task_id: str
    file_path: str
    reason: str
    blocking_task_id: str
    blocked_by_ids: set[str] = field(default_factory=set)


class FileLockManager:
    """Per-path mutual exclusion with a resume queue for conflicting tasks.

    Acquisition never waits: a task that cannot take a lock is moved to
    ``Queued`` and resumed by ``check_queued_tasks`` once its blocker has
    finished and the file is free again.
    """

    def __init__(self) -> None:
        self._locks: dict[str, FileLock] = {}
        self._task_files: dict[str, set[str]] = {}
        self._queued: dict[str, QueuedTaskInfo] = {}
        self._git_operation_in_progress = False
        self.queued_task_resumed = EventHook("queued_task_resumed")
        self.task_needs_pause = EventHook("task_needs_pause")

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    @property
    def git_operation_in_progress(self) -> bool:
        return self._git_operation_in_progress

    @property
    def queued_task_infos(self) -> dict[str, QueuedTaskInfo]:
        return dict(self._queued)

    def set_git_operation_in_progress(self, in_progress: bool) -> None:
        self._git_operation_in_progress = in_progress

    def locks(self) -> list[FileLock]:
        return list(self._locks.values())

    def get_lock(self, normalized_path: str) -> FileLock | None:
        return self._locks.get(normalized_path)

    def is_file_locked(self, normalized_path: str) -> bool:
        return normalized_path in self._locks

    def get_task_locked_files(self, task_id: str) -> set[str]:
        return set(self._task_files.get(task_id, ()))

    def get_task_locks(self, task_id: str) -> list[FileLock]:
        return [self._locks[path] for path in sorted(self._task_files.get(task_id, ())) if path in self._locks]

    def try_acquire_lock(
        self,
        path: str,
        task_id: str,
        tool_name: str,
        active_tasks: Mapping[str, AgentTask],
        *,
        is_ignored: bool = False,
    ) -> bool:
        if self._git_operation_in_progress:
            logger.info("Rejecting lock acquisition for %s: git operation in progress", path)
            return False

        task = active_tasks.get(task_id)
        ignore_locks = is_ignored or (task is not None and task.ignore_file_locks)
        normalized = normalize_path(path, task.project_path if task else None)
        if not normalized:
            return False

        existing = self._locks.get(normalized)
        if existing is not None:
            if existing.owner_task_id == task_id:
                existing.tool_name = tool_name
                existing.acquired_at = _now()
                existing.is_ignored = ignore_locks
                return True
            if ignore_locks:
                logger.debug(
                    "Task %s bypasses lock on %s held by %s", task_id, normalized, existing.owner_task_id
                )
                return True
            return False

        self._locks[normalized] = FileLock(
            path=normalized,
            original_path=path,
            owner_task_id=task_id,
            tool_name=tool_name,
            is_ignored=ignore_locks,
        )
        self._task_files.setdefault(task_id, set()).add(normalized)
        return True

    def try_acquire_or_conflict(
        self,
        path: str,
        task_id: str,
        tool_name: str,
        active_tasks: Mapping[str, AgentTask],
        notify: NotifySink | None = None,
    ) -> bool:
        if self.try_acquire_lock(path, task_id, tool_name, active_tasks):
            return True
        self.handle_file_lock_conflict(task_id, path, tool_name, active_tasks, notify)
        return False

    def handle_file_lock_conflict(
        self,
        task_id: str,
        path: str,
        tool_name: str,
        active_tasks: Mapping[str, AgentTask],
        notify: NotifySink | None = None,
    ) -> None:
        task = active_tasks.get(task_id)
        if task is None:
            return

        normalized = normalize_path(path, task.project_path)
        blocking_lock = self._locks.get(normalized)
        blocking_task_id = blocking_lock.owner_task_id if blocking_lock else "unknown"
        blocker = active_tasks.get(blocking_task_id)
        blocker_number = blocker.number if blocker is not None else None
        blocker_label = blocker_number if blocker_number is not None else "?"
        name = file_name(path)

        logger.info(
            "File lock conflict for task #%s on %s (held by %s); queuing",
            task.number,
            normalized,
            blocking_task_id,
        )
        self.release_task_locks(task_id)

        if notify is not None:
            notify(task_id, f"\n[conductor] FILE LOCK CONFLICT: {name} is locked by task #{blocker_label} ({tool_name})\n")
            notify(task_id, f"[conductor] Pausing and queuing task #{task.number} for auto-resume...\n")

        if task.has_live_process:
            self.task_needs_pause.emit(task_id)

        reason = f"File locked: {name} by #{blocker_label}"
        task.status = TaskStatus.QUEUED
        task.queued_reason = reason
        task.blocked_by_task_id = blocking_task_id
        task.blocked_by_task_number = blocker_number
        self._queued[task_id] = QueuedTaskInfo(
            task_id=task_id,
            file_path=normalized,
            reason=reason,
            blocking_task_id=blocking_task_id,
            blocked_by_ids={blocking_task_id},
        )

    def release_task_locks(self, task_id: str) -> None:
        paths = self._task_files.pop(task_id, None)
        if not paths:
            return
        for path in paths:
            lock = self._locks.get(path)
            if lock is not None and lock.owner_task_id == task_id:
                del self._locks[path]
        logger.debug("Released %d lock(s) for task %s", len(paths), task_id)

    def check_queued_tasks(self, active_tasks: Mapping[str, AgentTask]) -> list[str]:
        to_resume: list[str] = []
        for task_id, info in self._queued.items():
            if any(
                (blocker := active_tasks.get(blocker_id)) is not None and not blocker.is_finished
                for blocker_id in info.blocked_by_ids
            ):
                continue
            if info.file_path in self._locks:
                continue
            to_resume.append(task_id)

        resumed: list[str] = []
        for task_id in to_resume:
            del self._queued[task_id]
            task = active_tasks.get(task_id)
            if task is None or task.is_finished:
                continue
            task.status = TaskStatus.RUNNING
            task.clear_queued_state()
            task.started_at = _now()
            resumed.append(task_id)
            self.queued_task_resumed.emit(task_id)
        return resumed

    def force_start_queued_task(self, task: AgentTask) -> None:
        self._queued.pop(task.id, None)
        task.status = TaskStatus.RUNNING
        task.clear_queued_state()
        task.started_at = _now()
        self.queued_task_resumed.emit(task.id)

    def add_queued_task_info(self, task_id: str, info: QueuedTaskInfo) -> None:
        self._queued[task_id] = info

    def remove_queued_info(self, task_id: str) -> None:
        self._queued.pop(task_id, None)

    def clear_all(self) -> None:
        self._locks.clear()
        self._task_files.clear()
        self._queued.clear()
