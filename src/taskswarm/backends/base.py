from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a worker backend execution fails."""

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


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


def visible_context(context: dict[str, Any]) -> dict[str, Any]:
    """Drop private routing keys (``_working_directory`` and friends) before prompting."""
    return {key: value for key, value in context.items() if not str(key).startswith("_")}


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Execute an agent synchronously and stream textual chunks."""

    @abstractmethod
    def worker_command(self, *, model: str | None = None) -> list[str]:
        """Command line for a detached worker that reads its prompt from stdin."""

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.execute(system_prompt, user_prompt, context):
            chunks.append(chunk)
        return "".join(chunks).strip()
