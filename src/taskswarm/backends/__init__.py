from taskswarm.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from taskswarm.backends.claude import ClaudeCodeBackend
from taskswarm.backends.codex import CodexBackend
from taskswarm.backends.codex_sdk import CodexSDKBackend
from taskswarm.backends.resilient import ResilientBackend, RetryPolicy
from taskswarm.backends.worker import (
    CliWorkerBackend,
    DirectRunResult,
    WorkerBackend,
    WorkerProcess,
    WorkerRequest,
)

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CliWorkerBackend",
    "CodexBackend",
    "CodexSDKBackend",
    "DirectRunResult",
    "ResilientBackend",
    "RetryPolicy",
    "WorkerBackend",
    "WorkerProcess",
    "WorkerRequest",
]
