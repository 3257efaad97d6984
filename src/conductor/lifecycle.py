"""Task lifecycle coordination.

``TaskLifecycleCoordinator`` owns every piece of mutable coordination state
(the task map, the dependency DAG, the lock table) and is meant to be driven
from a single thread, normally the thread running the asyncio event loop.
Callbacks arriving from other threads must go through :meth:`dispatch`.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
import threading
from collections.abc import Callable, Coroutine, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from conductor.backends.base import AgentLauncher, LaunchError
from conductor.config import ConductorConfig
from conductor.events import EventHook
from conductor.feature_mode import (
    COMPLETE_MARKER,
    NEEDS_MORE_WORK_MARKER,
    FeatureModeAction,
    FeatureModeController,
    OutputClassifier,
)
from conductor.locks import FileLockManager
from conductor.models import AgentTask, TaskPriority, TaskStatus, terminate_process
from conductor.orchestrator import TaskOrchestrator
from conductor.repo.git import GitError, GitRepository, relative_commit_paths
from conductor.repo.guard import GitOperationGuard
from conductor.streaming import StreamEventRouter

logger = logging.getLogger(__name__)

LifecycleEventHook = Callable[[dict[str, Any]], None]

SLOT_HOLDING_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.PAUSED, TaskStatus.QUEUED})

FEATURE_MODE_INSTRUCTIONS = (
    "\n\nWork autonomously. End every reply with a line reading either "
    f"{COMPLETE_MARKER} when the whole task is done, or {NEEDS_MORE_WORK_MARKER} "
    "when another iteration is needed."
)
RESUME_PROMPT = "Continue where you left off."
LOCK_RESUME_PROMPT = (
    "The file you were waiting for is no longer locked by another task. "
    "Continue where you left off."
)
TOKEN_LIMIT_RETRY_PROMPT = (
    "Continue where you left off. The previous attempt was interrupted by a "
    "token/rate limit. Pick up from where you stopped."
)


def _now() -> datetime:
    return datetime.now(UTC)


class DependencyCycleError(ValueError):
    """Raised when a new task's dependencies would close a loop."""


class _LaunchSink:
    """Ties process callbacks to the launch that produced them."""

    __slots__ = ("coordinator", "generation")

    def __init__(self, coordinator: TaskLifecycleCoordinator, generation: int) -> None:
        self.coordinator = coordinator
        self.generation = generation

    def on_stream_line(self, task_id: str, line: str) -> None:
        self.coordinator._on_stream_line(task_id, line, self.generation)

    def on_process_exited(self, task_id: str, exit_code: int) -> None:
        self.coordinator._on_process_exited(task_id, exit_code, self.generation)


class TaskLifecycleCoordinator:
    def __init__(
        self,
        launcher: AgentLauncher,
        *,
        config: ConductorConfig | None = None,
        orchestrator: TaskOrchestrator | None = None,
        lock_manager: FileLockManager | None = None,
        git_guard: GitOperationGuard | None = None,
        repository: GitRepository | None = None,
        feature_mode: FeatureModeController | None = None,
        event_hook: LifecycleEventHook | None = None,
    ) -> None:
        self.config = config or ConductorConfig.default()
        self.launcher = launcher
        self.orchestrator = orchestrator or TaskOrchestrator()
        self.lock_manager = lock_manager or FileLockManager()
        self.git_guard = git_guard or GitOperationGuard(self.lock_manager)
        self.repository = repository
        self.feature_mode = feature_mode or FeatureModeController(
            OutputClassifier(self.config.classifier), self.config.feature_mode
        )
        self.event_hook = event_hook
        self.tasks: dict[str, AgentTask] = {}
        self.router = StreamEventRouter(self.append_output, self.request_file_lock, self._record_session)
        self.output_appended = EventHook("output_appended")
        self.task_finished = EventHook("task_finished")
        self.feature_mode_finished = EventHook("feature_mode_finished")
        self._generations: dict[str, int] = {}
        self._next_number = 1
        self._loop: asyncio.AbstractEventLoop | None = None
        self._state_changed: asyncio.Event | None = None
        self._background: set[asyncio.Task[Any]] = set()

        self.orchestrator.task_ready.subscribe(self._on_task_ready)
        self.lock_manager.queued_task_resumed.subscribe(self._on_queued_task_resumed)
        self.lock_manager.task_needs_pause.subscribe(self._on_task_needs_pause)
        self.git_guard.operation_finished.subscribe(self._on_git_operation_finished)

    # -- plumbing -----------------------------------------------------------

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> asyncio.AbstractEventLoop:
        self._loop = loop or asyncio.get_running_loop()
        return self._loop

    def _current_loop(self) -> asyncio.AbstractEventLoop | None:
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return self._loop if self._loop is not None and not self._loop.is_closed() else None

    def dispatch(self, callback: Callable[..., Any], *args: Any) -> None:
        """Run ``callback`` on the coordination thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            callback(*args)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    def _schedule(
        self, delay_seconds: float, callback: Callable[..., Any], *args: Any
    ) -> asyncio.TimerHandle | None:
        loop = self._current_loop()
        if loop is None:
            logger.warning("No event loop available; timer for %s not armed", callback.__name__)
            return None
        return loop.call_later(max(0.0, delay_seconds), callback, *args)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any] | None:
        loop = self._current_loop()
        if loop is None:
            coro.close()
            logger.warning("No event loop available; background work skipped")
            return None
        background = loop.create_task(coro)
        self._background.add(background)
        background.add_done_callback(self._on_background_done)
        return background

    def _on_background_done(self, background: asyncio.Task[Any]) -> None:
        self._background.discard(background)
        if not background.cancelled() and background.exception() is not None:
            logger.error("Background work failed", exc_info=background.exception())
        self._notify_state_changed()

    def _notify_state_changed(self) -> None:
        if self._state_changed is not None:
            self._state_changed.set()

    # -- registration and scheduling ---------------------------------------

    def create_task(
        self,
        description: str,
        *,
        project_path: str = ".",
        dependency_ids: Iterable[str] = (),
        priority: TaskPriority = TaskPriority.NORMAL,
        priority_value: int = 0,
        feature_mode: bool = False,
        max_iterations: int | None = None,
        ignore_file_locks: bool = False,
        no_git_write: bool = False,
        parent_id: str | None = None,
        task_id: str | None = None,
    ) -> AgentTask:
        task_id = task_id or uuid4().hex[:12]
        if task_id in self.tasks:
            raise ValueError(f"Duplicate task id: {task_id}")
        dependencies = list(dict.fromkeys(dependency_ids))
        for dependency_id in dependencies:
            if self.orchestrator.detect_cycle(dependency_id, task_id):
                raise DependencyCycleError(f"Task {task_id} cannot depend on {dependency_id}: cycle")

        task = AgentTask(
            id=task_id,
            number=self._next_number,
            description=description,
            project_path=project_path,
            status=TaskStatus.INIT_QUEUED,
            priority=priority,
            priority_value=priority_value,
            dependency_ids=dependencies,
            parent_id=parent_id,
            feature_mode=feature_mode,
            max_iterations=max_iterations or self.config.feature_mode.default_max_iterations,
            ignore_file_locks=ignore_file_locks,
            no_git_write=no_git_write,
        )
        self._next_number += 1
        self.tasks[task.id] = task
        parent = self.tasks.get(parent_id) if parent_id else None
        if parent is not None:
            parent.child_ids.append(task.id)

        pending = [dep for dep in dependencies if not self._is_finished(dep)]
        self.orchestrator.add_task(task, pending)
        self._emit({"event": "task_created", "task_id": task.id, "number": task.number, "depends_on": pending})
        if not pending:
            self._fill_capacity()
        return task

    def _is_finished(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        return task is not None and task.is_finished

    def add_dependency(self, task_id: str, dependency_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != TaskStatus.INIT_QUEUED:
            return False
        if dependency_id in task.dependency_ids:
            return True
        if self.orchestrator.detect_cycle(dependency_id, task_id):
            logger.warning("Refusing dependency %s -> %s: would create a cycle", dependency_id, task_id)
            return False
        task.dependency_ids.append(dependency_id)
        if not self._is_finished(dependency_id):
            self.orchestrator.add_task(task, [dependency_id])
        return True

    def available_slots(self) -> int:
        limit = self.config.scheduler.max_parallel_tasks
        if limit <= 0:
            return max(1, len(self.tasks))
        busy = sum(1 for task in self.tasks.values() if task.status in SLOT_HOLDING_STATUSES)
        return max(0, limit - busy)

    def _fill_capacity(self) -> None:
        slots = self.available_slots()
        for task in self.orchestrator.get_next_runnable_tasks(slots):
            if self.available_slots() <= 0:
                break
            if task.status == TaskStatus.INIT_QUEUED and task.id in self.tasks:
                self.start_task(task.id)

    def _on_task_ready(self, task: AgentTask) -> None:
        if task.id not in self.tasks or task.status != TaskStatus.INIT_QUEUED:
            return
        if self.available_slots() > 0:
            self.start_task(task.id)

    def start_task(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != TaskStatus.INIT_QUEUED:
            return False
        self.orchestrator.mark_resolved(task.id)
        task.status = TaskStatus.RUNNING
        task.started_at = _now()
        task.ended_at = None
        task.runtime.cancel_event = threading.Event()
        prompt = task.description
        if task.feature_mode:
            task.current_iteration = 1
            prompt += FEATURE_MODE_INSTRUCTIONS
        logger.info("Starting task #%s (%s)", task.number, task.id)
        self._emit({"event": "task_started", "task_id": task.id, "number": task.number})
        return self._launch(task, prompt, resume=False)

    def _launch(self, task: AgentTask, prompt: str, *, resume: bool) -> bool:
        runtime = task.runtime
        generation = self._generations.get(task.id, 0) + 1
        self._generations[task.id] = generation
        runtime.last_iteration_output_start = len(runtime.output)
        runtime.is_processing = True
        try:
            runtime.process = self.launcher.launch(
                task, prompt, _LaunchSink(self, generation), resume=resume
            )
        except LaunchError as exc:
            logger.error("Failed to launch task #%s: %s", task.number, exc)
            runtime.is_processing = False
            self.append_output(task.id, f"[conductor] ERROR starting agent: {exc}\n")
            self._finish_task(task, TaskStatus.FAILED)
            return False
        if task.feature_mode:
            runtime.iteration_timer = self._schedule(
                self.config.feature_mode.iteration_timeout_minutes * 60,
                self._on_iteration_timeout,
                task.id,
            )
        return True

    def _abandon_process(self, task: AgentTask) -> None:
        self._generations[task.id] = self._generations.get(task.id, 0) + 1
        task.runtime.is_processing = False
        terminate_process(task.runtime.process, task_id=task.id)

    # -- process callbacks --------------------------------------------------

    def on_stream_line(self, task_id: str, line: str) -> None:
        self._on_stream_line(task_id, line, self._generations.get(task_id, 0))

    def on_process_exited(self, task_id: str, exit_code: int) -> None:
        self._on_process_exited(task_id, exit_code, self._generations.get(task_id, 0))

    def _is_current(self, task_id: str, generation: int) -> bool:
        return self._generations.get(task_id, 0) == generation

    def _on_stream_line(self, task_id: str, line: str, generation: int) -> None:
        task = self.tasks.get(task_id)
        if task is None or task.is_finished or not self._is_current(task_id, generation):
            return
        self.router.route(task_id, line)

    def _record_session(self, task_id: str, session_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is not None:
            task.conversation_id = session_id

    def append_output(self, task_id: str, text: str) -> None:
        task = self.tasks.get(task_id)
        if task is None or not text:
            return
        runtime = task.runtime
        runtime.output += text
        cap = self.config.output.max_output_chars
        if not task.feature_mode and cap > 0 and len(runtime.output) > cap:
            dropped = len(runtime.output) - cap
            runtime.output = runtime.output[dropped:]
            runtime.last_iteration_output_start = max(0, runtime.last_iteration_output_start - dropped)
        self.output_appended.emit(task_id, text)

    def request_file_lock(self, task_id: str, path: str, tool_name: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING:
            return False
        return self.lock_manager.try_acquire_or_conflict(
            path, task_id, tool_name, self.tasks, notify=self.append_output
        )

    def _on_process_exited(self, task_id: str, exit_code: int, generation: int) -> None:
        task = self.tasks.get(task_id)
        if task is None or not self._is_current(task_id, generation):
            return
        runtime = task.runtime
        runtime.is_processing = False
        if runtime.iteration_timer is not None:
            runtime.iteration_timer.cancel()
            runtime.iteration_timer = None
        self.router.forget(task_id)
        if task.status != TaskStatus.RUNNING:
            logger.debug("Ignoring exit of task #%s in status %s", task.number, task.status)
            return

        if task.feature_mode:
            self._handle_feature_iteration(task, exit_code)
            return

        message = runtime.dequeue_message()
        if message is not None:
            self.append_output(task.id, f"\n> {message}\n")
            self._launch(task, message, resume=True)
            return

        iteration_output = runtime.output[runtime.last_iteration_output_start :]
        if exit_code != 0 and self.feature_mode.classifier.is_retryable_rate_limit_error(iteration_output):
            minutes = self.config.retry.token_limit_retry_minutes
            self.append_output(
                task.id, f"\n[conductor] Token/rate limit detected. Retrying in {minutes:g} minutes...\n"
            )
            runtime.token_limit_retry_timer = self._schedule(
                minutes * 60, self._on_token_limit_retry_due, task.id
            )
            self._emit({"event": "retry_scheduled", "task_id": task.id, "minutes": minutes})
            return

        self._finish_task(task, TaskStatus.COMPLETED if exit_code == 0 else TaskStatus.FAILED)

    def _on_token_limit_retry_due(self, task_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            return
        task.runtime.token_limit_retry_timer = None
        if task.status != TaskStatus.RUNNING:
            self.lock_manager.release_task_locks(task_id)
            return
        self.append_output(task.id, "[conductor] Retrying after token limit...\n")
        self._launch(task, TOKEN_LIMIT_RETRY_PROMPT, resume=True)

    # -- feature mode -------------------------------------------------------

    def _continuation_prompt(self, task: AgentTask) -> str:
        return (
            f"Continue working on the task (iteration {task.current_iteration}/{task.max_iterations}). "
            "Review what is already done and take the next step."
            f"{FEATURE_MODE_INSTRUCTIONS}"
        )

    def _finish_feature_mode(self, task: AgentTask, status: TaskStatus) -> None:
        self.append_output(
            task.id,
            f"[Feature Mode] Total runtime: {timedelta(seconds=int(task.elapsed()))} "
            f"across {task.current_iteration} iteration(s).\n",
        )
        self._finish_task(task, status)
        self.feature_mode_finished.emit(task.id, status)
        self._emit({"event": "feature_mode_finished", "task_id": task.id, "status": str(status)})

    def _handle_feature_iteration(self, task: AgentTask, exit_code: int) -> None:
        runtime = task.runtime
        iteration_output = runtime.output[runtime.last_iteration_output_start :]
        decision = self.feature_mode.evaluate(
            task.status,
            timedelta(seconds=task.elapsed()),
            iteration_output,
            task.current_iteration,
            task.max_iterations,
            exit_code,
            task.consecutive_failures,
            len(runtime.output),
        )
        logger.info(
            "Task #%s iteration %d/%d exit=%d -> %s",
            task.number,
            task.current_iteration,
            task.max_iterations,
            exit_code,
            decision.action,
        )
        if decision.action == FeatureModeAction.SKIP:
            return
        task.consecutive_failures = decision.consecutive_failures

        if decision.action == FeatureModeAction.FINISH:
            status = decision.finish_status or TaskStatus.COMPLETED
            if status == TaskStatus.FAILED:
                self.append_output(
                    task.id,
                    f"\n[Feature Mode] {decision.consecutive_failures} consecutive failures detected "
                    "(crash loop). Stopping.\n",
                )
            elif self.feature_mode.runtime_exceeded(timedelta(seconds=task.elapsed())):
                hours = self.config.feature_mode.max_runtime_hours
                self.append_output(
                    task.id, f"\n[Feature Mode] Total runtime cap ({hours:g}h) reached. Stopping.\n"
                )
            else:
                self.append_output(task.id, "\n[Feature Mode] Task finished.\n")
            self._finish_feature_mode(task, status)
            return

        if decision.action == FeatureModeAction.RETRY_AFTER_DELAY:
            minutes = self.config.retry.token_limit_retry_minutes
            self.append_output(task.id, f"\n[Feature Mode] Token limit hit. Retrying in {minutes:g} minutes...\n")
            runtime.feature_retry_timer = self._schedule(minutes * 60, self._on_feature_retry_due, task.id)
            self._emit({"event": "retry_scheduled", "task_id": task.id, "minutes": minutes})
            return

        if exit_code != 0:
            self.append_output(
                task.id,
                f"\n[Feature Mode] Iteration exited with code {exit_code} (failure "
                f"{task.consecutive_failures}/{self.config.feature_mode.max_consecutive_failures})\n",
            )
        if decision.trim_output:
            runtime.output = runtime.output[-self.config.feature_mode.output_cap_chars :]
            runtime.last_iteration_output_start = 0
        task.current_iteration += 1
        self.append_output(
            task.id,
            f"\n[Feature Mode] Starting iteration {task.current_iteration}/{task.max_iterations}\n\n",
        )
        self._emit({"event": "iteration_started", "task_id": task.id, "iteration": task.current_iteration})
        prompt = runtime.dequeue_message() or self._continuation_prompt(task)
        self._launch(task, prompt, resume=True)

    def _on_feature_retry_due(self, task_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            return
        task.runtime.feature_retry_timer = None
        if task.status != TaskStatus.RUNNING:
            return
        if self.feature_mode.runtime_exceeded(timedelta(seconds=task.elapsed())):
            self.append_output(task.id, "\n[Feature Mode] Runtime cap reached during retry wait. Stopping.\n")
            self._finish_feature_mode(task, TaskStatus.COMPLETED)
            return
        self.append_output(task.id, "[Feature Mode] Retrying...\n")
        self._launch(task, self._continuation_prompt(task), resume=True)

    def _on_iteration_timeout(self, task_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            return
        task.runtime.iteration_timer = None
        if task.has_live_process:
            minutes = self.config.feature_mode.iteration_timeout_minutes
            self.append_output(
                task.id, f"\n[Feature Mode] Iteration timeout ({minutes:g}min). Killing stuck process.\n"
            )
            terminate_process(task.runtime.process, task_id=task.id)

    # -- pause, resume, follow-ups ------------------------------------------

    def _on_task_needs_pause(self, task_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            return
        logger.info("Suspending agent for task #%s until its file lock clears", task.number)
        self._abandon_process(task)

    def _on_git_operation_finished(self, name: str) -> None:
        # Locks refused during the operation queued their tasks with no blocker.
        if self.lock_manager.check_queued_tasks(self.tasks):
            logger.info("Resumed queued tasks after git %s", name)
        self._fill_capacity()
        self._notify_state_changed()

    def _on_queued_task_resumed(self, task_id: str) -> None:
        task = self.tasks.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING:
            return
        self.append_output(task.id, f"[conductor] Resuming task #{task.number}\n")
        self._emit({"event": "task_resumed", "task_id": task.id})
        if not task.runtime.is_processing:
            self._launch(task, task.runtime.dequeue_message() or LOCK_RESUME_PROMPT, resume=True)

    def pause_task(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != TaskStatus.RUNNING:
            return False
        task.status = TaskStatus.PAUSED
        task.runtime.stop_timers()
        self._abandon_process(task)
        self.append_output(task.id, f"[conductor] Task #{task.number} paused\n")
        self._emit({"event": "task_paused", "task_id": task.id})
        return True

    def force_start_task(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != TaskStatus.QUEUED:
            return False
        self.lock_manager.force_start_queued_task(task)
        return True

    def resume_task(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None:
            return False
        if task.status == TaskStatus.QUEUED:
            return self.force_start_task(task_id)
        if task.status != TaskStatus.PAUSED:
            return False
        task.status = TaskStatus.RUNNING
        self._emit({"event": "task_resumed", "task_id": task.id})
        return self._launch(task, task.runtime.dequeue_message() or RESUME_PROMPT, resume=True)

    def send_follow_up(self, task_id: str, message: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.is_finished or not message.strip():
            return False
        runtime = task.runtime
        if runtime.is_processing or task.status != TaskStatus.RUNNING:
            runtime.enqueue_message(message)
            self._emit({"event": "message_queued", "task_id": task.id, "pending": runtime.pending_message_count})
            return True
        self.append_output(task.id, f"\n> {message}\n")
        return self._launch(task, message, resume=True)

    # -- termination --------------------------------------------------------

    def cancel_task_immediate(self, task: AgentTask) -> None:
        if task.is_finished:
            return
        runtime = task.runtime
        runtime.dispose_cancellation()
        runtime.stop_timers()
        self.router.forget(task.id)
        self.lock_manager.release_task_locks(task.id)
        self.lock_manager.remove_queued_info(task.id)
        self._generations[task.id] = self._generations.get(task.id, 0) + 1
        runtime.is_processing = False
        terminate_process(runtime.process, task_id=task.id)
        task.status = TaskStatus.CANCELLED
        task.ended_at = _now()

    def cancel_task(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.is_finished:
            return False
        self.cancel_task_immediate(task)
        self.append_output(task.id, f"[conductor] Task #{task.number} cancelled\n")
        logger.info("Cancelled task #%s", task.number)
        self._after_terminal(task)
        return True

    def _commit_candidates(self, task: AgentTask) -> list[str]:
        paths: list[str] = []
        for lock in self.lock_manager.get_task_locks(task.id):
            path = lock.original_path.replace("\\", "/")
            if not posixpath.isabs(path):
                path = posixpath.join(task.project_path.replace("\\", "/"), path)
            paths.append(path)
        return paths

    def _finish_task(self, task: AgentTask, status: TaskStatus) -> None:
        if task.is_finished:
            return
        runtime = task.runtime
        runtime.stop_timers()
        runtime.dispose_cancellation()
        runtime.is_processing = False
        self.router.forget(task.id)
        runtime.locked_files_for_commit = self._commit_candidates(task)
        self.lock_manager.release_task_locks(task.id)
        self.lock_manager.remove_queued_info(task.id)
        task.status = status
        task.ended_at = _now()
        logger.info("Task #%s finished: %s", task.number, status)
        self._after_terminal(task)

    def _after_terminal(self, task: AgentTask) -> None:
        self.orchestrator.on_task_completed(task.id)
        self.lock_manager.check_queued_tasks(self.tasks)
        self.task_finished.emit(task)
        self._emit({"event": "task_finished", "task_id": task.id, "status": str(task.status)})
        if (
            task.status == TaskStatus.COMPLETED
            and self.config.git.auto_commit
            and self.repository is not None
            and not task.no_git_write
            and task.runtime.locked_files_for_commit
        ):
            self._spawn(self.commit_task(task.id))
        self._fill_capacity()
        self._notify_state_changed()

    def remove_task(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or not task.is_finished:
            return False
        task.runtime.dispose(task_id=task.id)
        del self.tasks[task_id]
        self._generations.pop(task_id, None)
        self.orchestrator.remove_task(task_id)
        self.orchestrator.reevaluate_all()
        return True

    def shutdown(self) -> None:
        for task in list(self.tasks.values()):
            self.cancel_task_immediate(task)
        self.lock_manager.clear_all()
        for background in list(self._background):
            background.cancel()

    # -- git ----------------------------------------------------------------

    async def commit_task(self, task_id: str) -> tuple[bool, str | None]:
        task = self.tasks.get(task_id)
        if task is None:
            return False, "Task not found"
        if not task.is_finished:
            return False, "Task is not finished"
        if task.is_committed:
            return False, "Task is already committed"
        if task.no_git_write:
            return False, "Task has no_git_write set"
        if self.repository is None:
            return False, "No repository configured"
        paths = relative_commit_paths(self.repository.repo_root, task.runtime.locked_files_for_commit)
        if not paths:
            return False, "No files were modified by this task to commit"

        summary = (task.summary or task.description).strip()
        first_line = summary.splitlines()[0][:72] if summary else task.id
        message = f"Task #{task.number}: {first_line}"
        repository = self.repository

        async def _commit() -> str:
            return await asyncio.to_thread(repository.commit_paths, paths, message)

        try:
            head = await self.git_guard.execute_git_operation(_commit, "commit")
        except GitError as exc:
            return False, f"commit failed: {exc}"
        task.is_committed = True
        self._emit({"event": "task_committed", "task_id": task.id, "commit": head})
        return True, None

    async def sync_repository(self) -> tuple[bool, str | None]:
        repository = self.repository
        if repository is None:
            return False, "No repository configured"

        async def _pull() -> None:
            if not await asyncio.to_thread(repository.has_remote):
                raise GitError("No remote configured")
            await asyncio.to_thread(repository.fetch)
            await asyncio.to_thread(repository.pull)

        return await self.git_guard.execute_while_no_locks_held(_pull, "pull")

    # -- running ------------------------------------------------------------

    def all_finished(self) -> bool:
        return all(task.is_finished for task in self.tasks.values())

    async def wait_until_finished(self) -> None:
        self.bind_loop()
        self._state_changed = asyncio.Event()
        while not (self.all_finished() and not self._background):
            self._state_changed.clear()
            await self._state_changed.wait()
