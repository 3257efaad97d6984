"""Routing of ``claude --output-format stream-json`` lines.

Text goes to the task's output; file-modifying tool calls are turned into
lock requests as soon as their target path is known, either from a complete
``tool_use`` block or from the partial JSON streamed in
``input_json_delta`` fragments.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from conductor.locks import extract_file_path, is_file_modify_tool, try_extract_file_path_from_partial

logger = logging.getLogger(__name__)

OutputSink = Callable[[str, str], None]
LockRequest = Callable[[str, str, str], bool]
SessionSink = Callable[[str, str], None]


@dataclass(slots=True)
class StreamingToolState:
    tool_name: str
    is_file_modify_tool: bool
    json_fragments: list[str] = field(default_factory=list)
    file_path_checked: bool = False

    @property
    def accumulated(self) -> str:
        return "".join(self.json_fragments)


def describe_tool(tool_name: str, tool_input: Mapping[str, Any] | None) -> str:
    path = extract_file_path(tool_input)
    if path and is_file_modify_tool(tool_name):
        return f"Editing {path}"
    if path and tool_name == "Read":
        return f"Reading {path}"
    if tool_name == "Bash" and tool_input:
        command = str(tool_input.get("command", ""))
        if command:
            return f"Running: {command[:80]}..." if len(command) > 80 else f"Running: {command}"
    return f"Using {tool_name}"


def _text_blocks(content: Any) -> list[str]:
    if isinstance(content, str):
        return [content]
    parts: list[str] = []
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
    return parts


class StreamEventRouter:
    def __init__(
        self,
        append_output: OutputSink,
        request_file_lock: LockRequest,
        record_session: SessionSink | None = None,
    ) -> None:
        self.append_output = append_output
        self.request_file_lock = request_file_lock
        self.record_session = record_session
        self.streaming_tools: dict[str, StreamingToolState] = {}

    def forget(self, task_id: str) -> None:
        self.streaming_tools.pop(task_id, None)

    def route(self, task_id: str, line: str) -> bool:
        """Handle one line; False when a lock conflict stopped processing."""
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            self.append_output(task_id, f"{line}\n")
            return True
        if not isinstance(event, dict):
            self.append_output(task_id, f"{line}\n")
            return True

        session_id = event.get("session_id")
        if isinstance(session_id, str) and session_id and self.record_session is not None:
            self.record_session(task_id, session_id)

        if event.get("type") == "stream_event" and isinstance(event.get("event"), dict):
            event = event["event"]

        event_type = event.get("type")
        if event_type == "assistant":
            return self._route_assistant(task_id, event)
        if event_type == "content_block_start":
            self._route_block_start(task_id, event)
        elif event_type == "content_block_delta":
            return self._route_block_delta(task_id, event)
        elif event_type == "content_block_stop":
            return self._route_block_stop(task_id)
        elif event_type == "result":
            result = event.get("result")
            if isinstance(result, str) and result:
                self.append_output(task_id, f"\n{result}\n")
        return True

    def _acquire(self, task_id: str, path: str, tool_name: str) -> bool:
        return self.request_file_lock(task_id, path, tool_name)

    def _route_assistant(self, task_id: str, event: dict[str, Any]) -> bool:
        message = event.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return True
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                for text in _text_blocks([block]):
                    self.append_output(task_id, f"{text}\n")
            elif block_type == "tool_use":
                tool_name = str(block.get("name") or "unknown")
                tool_input = block.get("input") if isinstance(block.get("input"), dict) else None
                self.append_output(task_id, f"\n{describe_tool(tool_name, tool_input)}\n")
                if is_file_modify_tool(tool_name):
                    path = extract_file_path(tool_input)
                    if path and not self._acquire(task_id, path, tool_name):
                        return False
        return True

    def _route_block_start(self, task_id: str, event: dict[str, Any]) -> None:
        block = event.get("content_block")
        if not isinstance(block, dict):
            return
        block_type = block.get("type")
        if block_type == "tool_use":
            tool_name = str(block.get("name") or "tool")
            self.append_output(task_id, f"\n{describe_tool(tool_name, None)}...\n")
            self.streaming_tools[task_id] = StreamingToolState(
                tool_name=tool_name, is_file_modify_tool=is_file_modify_tool(tool_name)
            )
        elif block_type == "thinking":
            self.append_output(task_id, "[Thinking...]\n")

    def _route_block_delta(self, task_id: str, event: dict[str, Any]) -> bool:
        delta = event.get("delta")
        if not isinstance(delta, dict):
            return True
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            self.append_output(task_id, str(delta.get("text") or ""))
        elif delta_type == "thinking_delta":
            thinking = str(delta.get("thinking") or "")
            if thinking:
                self.append_output(task_id, thinking)
        elif delta_type == "input_json_delta":
            state = self.streaming_tools.get(task_id)
            if state is None or not state.is_file_modify_tool or state.file_path_checked:
                return True
            state.json_fragments.append(str(delta.get("partial_json") or ""))
            path = try_extract_file_path_from_partial(state.accumulated)
            if path is not None:
                state.file_path_checked = True
                return self._acquire(task_id, path, state.tool_name)
        return True

    def _route_block_stop(self, task_id: str) -> bool:
        state = self.streaming_tools.pop(task_id, None)
        if state is not None and state.is_file_modify_tool and not state.file_path_checked:
            accumulated = state.accumulated
            if accumulated:
                try:
                    tool_input = json.loads(accumulated)
                except json.JSONDecodeError:
                    logger.debug("Unparseable streamed tool input for task %s", task_id)
                    tool_input = None
                path = extract_file_path(tool_input) if isinstance(tool_input, dict) else None
                if path:
                    state.file_path_checked = True
                    if not self._acquire(task_id, path, state.tool_name):
                        return False
        self.append_output(task_id, "\n")
        return True
