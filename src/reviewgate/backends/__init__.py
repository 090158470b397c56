from reviewgate.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from reviewgate.backends.claude import ClaudeCodeBackend
from reviewgate.backends.cli import CliAgentBackend
from reviewgate.backends.codex import CodexBackend
from reviewgate.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CliAgentBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
]
