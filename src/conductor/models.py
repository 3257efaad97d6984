from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TaskStatus(StrEnum):
    INIT_QUEUED = "init_queued"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


FINISHED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.FAILED})


class TaskPriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


@runtime_checkable
class ProcessHandle(Protocol):
    """The only process operations the coordinator relies on."""

    @property
    def has_exited(self) -> bool: ...

    def terminate(self) -> None: ...


def terminate_process(process: ProcessHandle | None, *, task_id: str = "") -> None:
    if process is None:
        return
    try:
        if not process.has_exited:
            process.terminate()
    except Exception:
        logger.warning("Failed to kill process for task %s", task_id, exc_info=True)


@dataclass(slots=True)
class RuntimeTaskContext:
    process: ProcessHandle | None = None
    cancel_event: threading.Event | None = None
    output: str = ""
    last_iteration_output_start: int = 0
    feature_retry_timer: asyncio.TimerHandle | None = None
    iteration_timer: asyncio.TimerHandle | None = None
    token_limit_retry_timer: asyncio.TimerHandle | None = None
    messages: deque[str] = field(default_factory=deque)
    is_processing: bool = False
    locked_files_for_commit: list[str] = field(default_factory=list)

    def enqueue_message(self, message: str) -> None:
        self.messages.append(message)

    def dequeue_message(self) -> str | None:
        if not self.messages:
            return None
        return self.messages.popleft()

    @property
    def pending_message_count(self) -> int:
        return len(self.messages)

    @property
    def has_retry_timer(self) -> bool:
        return self.feature_retry_timer is not None or self.token_limit_retry_timer is not None

    def stop_timers(self) -> None:
        for timer in (self.feature_retry_timer, self.iteration_timer, self.token_limit_retry_timer):
            if timer is not None:
                timer.cancel()
        self.feature_retry_timer = None
        self.iteration_timer = None
        self.token_limit_retry_timer = None

    def dispose_cancellation(self) -> None:
        if self.cancel_event is not None:
            self.cancel_event.set()
        self.cancel_event = None

    def dispose(self, *, task_id: str = "") -> None:
        self.stop_timers()
        self.dispose_cancellation()
        terminate_process(self.process, task_id=task_id)


@dataclass(slots=True)
class AgentTask:
    id: str
    number: int
    description: str
    project_path: str = "."
    status: TaskStatus = TaskStatus.RUNNING
    priority: TaskPriority = TaskPriority.NORMAL
    priority_value: int = 0
    dependency_ids: list[str] = field(default_factory=list)
    parent_id: str | None = None
    child_ids: list[str] = field(default_factory=list)
    blocked_by_task_id: str | None = None
    blocked_by_task_number: int | None = None
    queued_reason: str | None = None
    feature_mode: bool = False
    current_iteration: int = 0
    max_iterations: int = 50
    consecutive_failures: int = 0
    ignore_file_locks: bool = False
    no_git_write: bool = False
    is_committed: bool = False
    summary: str = ""
    conversation_id: str | None = None
    started_at: datetime = field(default_factory=_utcnow)
    ended_at: datetime | None = None
    runtime: RuntimeTaskContext = field(default_factory=RuntimeTaskContext)

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def is_retryable(self) -> bool:
        return self.status in {TaskStatus.FAILED, TaskStatus.CANCELLED}

    @property
    def process(self) -> ProcessHandle | None:
        return self.runtime.process

    @property
    def has_live_process(self) -> bool:
        process = self.runtime.process
        return process is not None and not process.has_exited

    @property
    def output(self) -> str:
        return self.runtime.output

    @property
    def status_text(self) -> str:
        if self.status == TaskStatus.COMPLETED:
            return "Finished"
        if self.status == TaskStatus.CANCELLED:
            return "Cancelled"
        if self.status == TaskStatus.FAILED:
            return "Failed"
        if self.status == TaskStatus.QUEUED:
            return "Queued"
        if self.status == TaskStatus.PAUSED:
            return "Paused"
        if self.status == TaskStatus.INIT_QUEUED:
            return "Waiting"
        if self.runtime.has_retry_timer:
            return "Retrying soon"
        if self.feature_mode:
            return f"Running ({self.current_iteration}/{self.max_iterations})"
        return "Running"

    def elapsed(self, now: datetime | None = None) -> float:
        """Seconds since the task (re)started."""
        end = self.ended_at or now or _utcnow()
        return max(0.0, (end - self.started_at).total_seconds())

    def clear_queued_state(self) -> None:
        self.queued_reason = None
        self.blocked_by_task_id = None
        self.blocked_by_task_number = None
