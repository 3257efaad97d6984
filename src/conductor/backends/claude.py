from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path

from conductor.backends.base import AgentEventSink, AgentLauncher, LaunchError
from conductor.models import AgentTask

logger = logging.getLogger(__name__)

STREAM_LIMIT = 16 * 1024 * 1024


class ClaudeProcess:
    """Handle for a single ``claude -p`` iteration."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self.process: asyncio.subprocess.Process | None = None
        self.runner: asyncio.Task[None] | None = None
        self.exit_code: int | None = None
        self.terminated = False

    @property
    def has_exited(self) -> bool:
        if self.exit_code is not None:
            return True
        if self.process is None:
            return self.runner is not None and self.runner.done()
        return self.process.returncode is not None

    def terminate(self) -> None:
        self.terminated = True
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass


class ClaudeCodeLauncher(AgentLauncher):
    def __init__(
        self,
        binary: str = "claude",
        *,
        skip_permissions: bool = False,
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary
        self.skip_permissions = skip_permissions
        self.extra_args = list(extra_args or [])

    def build_command(
        self, prompt: str, *, resume: bool = False, conversation_id: str | None = None
    ) -> list[str]:
        command = [self.binary, "-p", "--verbose", "--output-format", "stream-json"]
        if self.skip_permissions:
            command.append("--dangerously-skip-permissions")
        if resume and conversation_id:
            command.extend(["--resume", conversation_id])
        elif resume:
            command.append("--continue")
        command.extend(self.extra_args)
        command.append(prompt)
        return command

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def launch(
        self,
        task: AgentTask,
        prompt: str,
        sink: AgentEventSink,
        *,
        resume: bool = False,
    ) -> ClaudeProcess:
        if shutil.which(self.binary) is None:
            raise LaunchError(
                f"Claude binary not found: {self.binary}", backend="claude", retriable=False
            )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise LaunchError(
                "Launching an agent requires a running event loop", backend="claude", retriable=False
            ) from exc

        command = self.build_command(prompt, resume=resume, conversation_id=task.conversation_id)
        handle = ClaudeProcess(task.id)
        handle.runner = loop.create_task(self._run(handle, task, command, sink))
        handle.runner.add_done_callback(self._on_runner_done)
        return handle

    @staticmethod
    def _on_runner_done(runner: asyncio.Task[None]) -> None:
        if runner.cancelled():
            return
        exc = runner.exception()
        if exc is not None:
            logger.error("Agent stream reader failed: %s", exc, exc_info=exc)

    async def _run(
        self, handle: ClaudeProcess, task: AgentTask, command: list[str], sink: AgentEventSink
    ) -> None:
        cwd = Path(task.project_path)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd.is_dir() else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            logger.error("Failed to start %s for task %s: %s", self.binary, task.id, exc)
            handle.exit_code = 127
            sink.on_stream_line(task.id, f"[conductor] Failed to start {self.binary}: {exc}")
            sink.on_process_exited(task.id, 127)
            return

        handle.process = process
        if handle.terminated:
            handle.terminate()
        logger.debug("Started %s (pid %s) for task %s", self.binary, process.pid, task.id)

        if process.stdout is not None:
            parse_buffer = ""
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                if candidate.startswith("{"):
                    try:
                        json.loads(candidate)
                    except json.JSONDecodeError:
                        if self._appears_partial_json(candidate):
                            parse_buffer = candidate
                            continue
                parse_buffer = ""
                sink.on_stream_line(task.id, candidate)
            if parse_buffer:
                sink.on_stream_line(task.id, parse_buffer)

        exit_code = await process.wait()
        handle.exit_code = exit_code
        sink.on_process_exited(task.id, exit_code)
