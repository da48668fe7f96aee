from forge.backends.base import (
    AgentBackend,
    AgentRequest,
    AgentResult,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from forge.backends.claude import ClaudeCodeBackend
from forge.backends.codex import CodexBackend
from forge.backends.resilient import ResilientBackend, RetryPolicy

BACKENDS: dict[str, type[AgentBackend]] = {
    "claude": ClaudeCodeBackend,
    "codex": CodexBackend,
}

__all__ = [
    "BACKENDS",
    "AgentBackend",
    "AgentRequest",
    "AgentResult",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
]
