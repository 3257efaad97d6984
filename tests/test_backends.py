import asyncio
import logging
import stat
from pathlib import Path

import pytest

from conductor.backends import ClaudeCodeLauncher, ClaudeProcess, LaunchError
from conductor.models import AgentTask
from conductor.streaming import StreamEventRouter


class RecordingSink:
    def __init__(self) -> None:
        self.lines: list[str] = []
        self.exits: list[int] = []

    def on_stream_line(self, task_id: str, line: str) -> None:
        self.lines.append(line)

    def on_process_exited(self, task_id: str, exit_code: int) -> None:
        self.exits.append(exit_code)


def _fake_claude(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "fake-claude"
    script.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IEXEC)
    return script


def test_build_command_shapes() -> None:
    launcher = ClaudeCodeLauncher("claude", skip_permissions=True, extra_args=["--model", "opus"])

    fresh = launcher.build_command("do it")
    resumed = launcher.build_command("go on", resume=True)
    by_session = launcher.build_command("go on", resume=True, conversation_id="sess-9")

    assert fresh == [
        "claude",
        "-p",
        "--verbose",
        "--output-format",
        "stream-json",
        "--dangerously-skip-permissions",
        "--model",
        "opus",
        "do it",
    ]
    assert resumed[-4:] == ["--continue", "--model", "opus", "go on"]
    assert by_session[-5:] == ["--resume", "sess-9", "--model", "opus", "go on"]


def test_launch_without_binary_raises() -> None:
    launcher = ClaudeCodeLauncher("definitely-not-an-agent-binary")
    task = AgentTask(id="t1", number=1, description="x")

    with pytest.raises(LaunchError) as exc_info:
        launcher.launch(task, "x", RecordingSink())

    assert exc_info.value.backend == "claude"
    assert exc_info.value.retriable is False


def test_launch_streams_lines_and_reports_exit(tmp_path: Path) -> None:
    script = _fake_claude(
        tmp_path,
        "echo '{\"type\": \"assistant\",'\n"
        "echo '\"message\": {\"content\": []}}'\n"
        "echo 'plain text'\n"
        "exit 3",
    )
    launcher = ClaudeCodeLauncher(str(script))
    task = AgentTask(id="t1", number=1, description="x", project_path=str(tmp_path))
    sink = RecordingSink()

    async def _main() -> ClaudeProcess:
        handle = launcher.launch(task, "hello", sink)
        assert handle.runner is not None
        await handle.runner
        return handle

    handle = asyncio.run(_main())

    assert sink.lines == ['{"type": "assistant","message": {"content": []}}', "plain text"]
    assert sink.exits == [3]
    assert handle.has_exited
    assert handle.exit_code == 3


def test_terminate_kills_running_process(tmp_path: Path) -> None:
    script = _fake_claude(tmp_path, "exec sleep 30")
    launcher = ClaudeCodeLauncher(str(script))
    task = AgentTask(id="t1", number=1, description="x", project_path=str(tmp_path))
    sink = RecordingSink()

    async def _main() -> ClaudeProcess:
        handle = launcher.launch(task, "hello", sink)
        while handle.process is None:
            await asyncio.sleep(0.01)
        handle.terminate()
        assert handle.runner is not None
        await handle.runner
        return handle

    handle = asyncio.run(_main())

    assert handle.has_exited
    assert sink.exits and sink.exits[0] != 0


def test_complete_line_with_unbalanced_brace_in_string_is_not_buffered(tmp_path: Path) -> None:
    text_line = '{"type":"assistant","message":{"content":[{"type":"text","text":"if (x) {"}]}}'
    edit_line = (
        '{"type":"assistant","message":{"content":[{"type":"tool_use","name":"Edit",'
        '"input":{"file_path":"src/a.py","new_string":"def f() -> list[int]:"}}]}}'
    )
    script = _fake_claude(tmp_path, f"echo '{text_line}'\necho '{edit_line}'")
    launcher = ClaudeCodeLauncher(str(script))
    task = AgentTask(id="t1", number=1, description="x", project_path=str(tmp_path))
    sink = RecordingSink()

    async def _main() -> None:
        handle = launcher.launch(task, "hello", sink)
        assert handle.runner is not None
        await handle.runner

    asyncio.run(_main())

    assert sink.lines == [text_line, edit_line]
    assert sink.exits == [0]

    output: list[str] = []
    requests: list[tuple[str, str]] = []

    def _lock(task_id: str, path: str, tool_name: str) -> bool:
        requests.append((path, tool_name))
        return True

    router = StreamEventRouter(lambda task_id, text: output.append(text), _lock, lambda *_: None)
    for line in sink.lines:
        router.route("t1", line)

    assert requests == [("src/a.py", "Edit")]
    assert "if (x) {" in "".join(output)


def test_sink_failure_is_logged(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    class BrokenSink(RecordingSink):
        def on_stream_line(self, task_id: str, line: str) -> None:
            raise RuntimeError("sink exploded")

    script = _fake_claude(tmp_path, "echo 'plain text'")
    launcher = ClaudeCodeLauncher(str(script))
    task = AgentTask(id="t1", number=1, description="x", project_path=str(tmp_path))

    async def _main() -> None:
        handle = launcher.launch(task, "hello", BrokenSink())
        assert handle.runner is not None
        with pytest.raises(RuntimeError, match="sink exploded"):
            await handle.runner
        await asyncio.sleep(0)

    with caplog.at_level(logging.ERROR, logger="conductor.backends.claude"):
        asyncio.run(_main())

    assert "Agent stream reader failed: sink exploded" in caplog.text
