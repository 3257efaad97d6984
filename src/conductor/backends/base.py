from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Protocol

from conductor.models import AgentTask, ProcessHandle


class LaunchError(RuntimeError):
    """Raised when an agent process cannot be started."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class AgentEventSink(Protocol):
    def on_stream_line(self, task_id: str, line: str) -> None: ...

    def on_process_exited(self, task_id: str, exit_code: int) -> None: ...


class AgentLauncher(ABC):
    @abstractmethod
    def launch(
        self,
        task: AgentTask,
        prompt: str,
        sink: AgentEventSink,
        *,
        resume: bool = False,
    ) -> ProcessHandle:
        """Start one agent iteration and return its handle without waiting."""
