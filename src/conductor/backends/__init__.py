from conductor.backends.base import (
    AgentEventSink,
    AgentLauncher,
    LaunchError,
)
from conductor.backends.claude import ClaudeCodeLauncher, ClaudeProcess

__all__ = [
    "AgentEventSink",
    "AgentLauncher",
    "ClaudeCodeLauncher",
    "ClaudeProcess",
    "LaunchError",
]
