import json

from conductor.streaming import StreamEventRouter, describe_tool


class Recorder:
    def __init__(self, grant: bool = True) -> None:
        self.grant = grant
        self.output: list[str] = []
        self.lock_requests: list[tuple[str, str, str]] = []
        self.sessions: list[tuple[str, str]] = []

    def append(self, task_id: str, text: str) -> None:
        self.output.append(text)

    def lock(self, task_id: str, path: str, tool_name: str) -> bool:
        self.lock_requests.append((task_id, path, tool_name))
        return self.grant

    def session(self, task_id: str, session_id: str) -> None:
        self.sessions.append((task_id, session_id))

    def router(self) -> StreamEventRouter:
        return StreamEventRouter(self.append, self.lock, self.session)


def _line(payload: dict) -> str:
    return json.dumps(payload)


def test_plain_text_lines_pass_through() -> None:
    recorder = Recorder()

    assert recorder.router().route("t1", "not json at all")

    assert recorder.output == ["not json at all\n"]


def test_assistant_tool_use_requests_lock() -> None:
    recorder = Recorder()
    line = _line(
        {
            "type": "assistant",
            "session_id": "sess-1",
            "message": {
                "content": [
                    {"type": "text", "text": "Let me fix that."},
                    {"type": "tool_use", "name": "Edit", "input": {"file_path": "src/app.py"}},
                ]
            },
        }
    )

    assert recorder.router().route("t1", line)

    assert recorder.lock_requests == [("t1", "src/app.py", "Edit")]
    assert recorder.sessions == [("t1", "sess-1")]
    assert "Let me fix that.\n" in recorder.output
    assert "\nEditing src/app.py\n" in recorder.output


def test_read_tool_does_not_request_lock() -> None:
    recorder = Recorder()
    line = _line(
        {
            "type": "assistant",
            "message": {"content": [{"type": "tool_use", "name": "Read", "input": {"file_path": "a.py"}}]},
        }
    )

    recorder.router().route("t1", line)

    assert recorder.lock_requests == []
    assert "\nReading a.py\n" in recorder.output


def test_denied_lock_stops_processing() -> None:
    recorder = Recorder(grant=False)
    line = _line(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "tool_use", "name": "Write", "input": {"file_path": "a.py"}},
                    {"type": "tool_use", "name": "Write", "input": {"file_path": "b.py"}},
                ]
            },
        }
    )

    assert recorder.router().route("t1", line) is False
    assert [path for _, path, _ in recorder.lock_requests] == ["a.py"]


def test_streamed_tool_input_requests_lock_once() -> None:
    recorder = Recorder()
    router = recorder.router()
    events = [
        {"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Edit"}},
        {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '{"file_pa'}},
        {
            "type": "content_block_delta",
            "delta": {"type": "input_json_delta", "partial_json": 'th": "lib/util.py", "old'},
        },
        {"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '_string": "x"}'}},
        {"type": "content_block_stop"},
    ]

    for event in events:
        assert router.route("t1", _line({"type": "stream_event", "event": event}))

    assert recorder.lock_requests == [("t1", "lib/util.py", "Edit")]
    assert "t1" not in router.streaming_tools


def test_streamed_tool_input_parsed_at_block_stop() -> None:
    recorder = Recorder()
    router = recorder.router()
    router.route("t1", _line({"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Write"}}))
    router.route(
        "t1",
        _line({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '{"path": "x.md"}'}}),
    )

    assert recorder.lock_requests == []
    assert router.route("t1", _line({"type": "content_block_stop"}))
    assert recorder.lock_requests == [("t1", "x.md", "Write")]


def test_text_deltas_and_result_are_appended() -> None:
    recorder = Recorder()
    router = recorder.router()

    router.route("t1", _line({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hel"}}))
    router.route("t1", _line({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "lo"}}))
    router.route("t1", _line({"type": "result", "result": "STATUS: COMPLETE"}))

    assert "".join(recorder.output) == "Hello\nSTATUS: COMPLETE\n"


def test_forget_drops_streaming_state() -> None:
    recorder = Recorder()
    router = recorder.router()
    router.route("t1", _line({"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Edit"}}))

    router.forget("t1")

    assert router.streaming_tools == {}


def test_describe_tool() -> None:
    assert describe_tool("Edit", {"file_path": "a.py"}) == "Editing a.py"
    assert describe_tool("Bash", {"command": "pytest -q"}) == "Running: pytest -q"
    assert describe_tool("Bash", {"command": "x" * 100}).endswith("...")
    assert describe_tool("Grep", {"pattern": "foo"}) == "Using Grep"
