from taskherd.backends.base import (
    AgentBackend,
    AgentRequest,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    CommandLineBackend,
)
from taskherd.backends.claude import ClaudeCodeBackend
from taskherd.backends.codex import CodexBackend

__all__ = [
    "AgentBackend",
    "AgentRequest",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "CommandLineBackend",
]
