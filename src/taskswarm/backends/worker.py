from __future__ import annotations

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from shutil import which
from typing import Protocol

from taskswarm.backends.base import AgentBackend, BackendExecutionError
from taskswarm.errors import SpawnFailed

logger = logging.getLogger(__name__)


class WorkerProcess(Protocol):
    pid: int

    def wait(self, timeout: float | None = None) -> int: ...


@dataclass(slots=True)
class WorkerRequest:
    agent_id: str
    role: str
    prompt: str
    system_prompt: str
    working_directory: Path
    stdout_path: Path
    stderr_path: Path
    prompt_path: Path
    env: dict[str, str] = field(default_factory=dict)
    model: str | None = None


@dataclass(slots=True)
class DirectRunResult:
    ok: bool
    output: str = ""
    error: str | None = None


class WorkerBackend(ABC):
    """Runs worker agents either detached or in-process."""

    @abstractmethod
    def launch(self, request: WorkerRequest) -> WorkerProcess:
        """Start a detached worker and return without waiting for it."""

    @abstractmethod
    async def run_direct(self, request: WorkerRequest) -> DirectRunResult:
        """Run the worker task to completion in the calling process."""

    def available(self) -> bool:
        return True


class CliWorkerBackend(WorkerBackend):
    def __init__(self, launcher: AgentBackend, direct: AgentBackend) -> None:
        self.launcher = launcher
        self.direct = direct

    def command(self, request: WorkerRequest) -> list[str]:
        return self.launcher.worker_command(model=request.model)

    def available(self) -> bool:
        command = self.launcher.worker_command()
        return which(command[0]) is not None

    def launch(self, request: WorkerRequest) -> WorkerProcess:
        request.prompt_path.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_path.write_text(
            f"{request.system_prompt}\n\n{request.prompt}\n", encoding="utf-8"
        )
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)

        env = os.environ.copy()
        env.update(request.env)
        command = self.command(request)
        try:
            with (
                request.prompt_path.open("rb") as stdin,
                request.stdout_path.open("ab") as stdout,
                request.stderr_path.open("ab") as stderr,
            ):
                process = subprocess.Popen(
                    command,
                    cwd=str(request.working_directory),
                    env=env,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=stderr,
                    start_new_session=True,
                )
        except OSError as exc:
            request.prompt_path.unlink(missing_ok=True)
            raise SpawnFailed(f"Failed to launch {command[0]} for {request.role}: {exc}") from exc
        logger.info("Launched %s worker %s (pid %d)", request.role, request.agent_id, process.pid)
        return process

    async def run_direct(self, request: WorkerRequest) -> DirectRunResult:
        context: dict[str, object] = {"_working_directory": str(request.working_directory)}
        if request.model:
            context["model"] = request.model
        try:
            output = await self.direct.run(request.system_prompt, request.prompt, context)
        except BackendExecutionError as exc:
            logger.error("Direct execution of %s failed: %s", request.agent_id, exc)
            return DirectRunResult(ok=False, error=str(exc))
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stdout_path.write_text(output + "\n", encoding="utf-8")
        return DirectRunResult(ok=True, output=output)
