import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from taskswarm.backends import CliWorkerBackend, RetryPolicy, WorkerRequest
from taskswarm.backends.base import AgentBackend, BackendExecutionError
from taskswarm.backends.claude import ClaudeCodeBackend
from taskswarm.backends.codex import CodexBackend
from taskswarm.backends.codex_sdk import CodexSDKBackend
from taskswarm.backends.resilient import ResilientBackend
from taskswarm.errors import SpawnFailed


class AlwaysFailBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        raise BackendExecutionError("boom", backend="fake", retriable=True)
        yield ""  # pragma: no cover

    def worker_command(self, *, model: str | None = None) -> list[str]:
        return ["fail-worker"]


class SuccessBackend(AgentBackend):
    def __init__(self) -> None:
        self.last_context: dict[str, Any] | None = None

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        self.last_context = context
        yield "ok"

    def worker_command(self, *, model: str | None = None) -> list[str]:
        return ["ok-worker", *(["--model", model] if model else [])]


def _request(tmp_path: Path, **overrides: Any) -> WorkerRequest:
    fields: dict[str, Any] = {
        "agent_id": "backend-20260101-000000-abcd",
        "role": "backend",
        "prompt": "Implement the API",
        "system_prompt": "You are a backend agent",
        "working_directory": tmp_path,
        "stdout_path": tmp_path / "logs" / "agent.out.log",
        "stderr_path": tmp_path / "logs" / "agent.err.log",
        "prompt_path": tmp_path / "prompts" / "agent.md",
    }
    fields.update(overrides)
    return WorkerRequest(**fields)


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"goal": "x", "model": "gpt-5-codex", "_working_directory": "/tmp/w"},
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert "--output-format" not in command
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "_working_directory" not in command[-1]


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("implement feature", model="sonnet")

    assert command[0:2] == ["claude", "-p"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert "--dangerously-skip-permissions" in command
    assert command[-2:] == ["--model", "sonnet"]


def test_worker_commands_read_prompt_from_stdin() -> None:
    claude = ClaudeCodeBackend(binary="claude")
    strict_claude = ClaudeCodeBackend(binary="claude", skip_permissions=False)
    codex = CodexBackend(binary="codex")

    assert claude.worker_command() == ["claude", "-p", "--dangerously-skip-permissions"]
    assert strict_claude.worker_command(model="opus") == ["claude", "-p", "--model", "opus"]
    assert codex.worker_command() == ["codex", "exec", "--full-auto", "-"]
    assert codex.worker_command(model="gpt-5-codex") == [
        "codex",
        "exec",
        "--full-auto",
        "-m",
        "gpt-5-codex",
        "-",
    ]


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []

    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=AlwaysFailBackend(),
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    async def _run() -> str:
        parts: list[str] = []
        async for part in backend.execute("system", "user", context={}):
            parts.append(part)
        return "".join(parts)

    output = asyncio.run(_run())

    assert output == "ok"
    event_names = [event["event"] for event in events]
    assert "backend_failover_start" in event_names
    assert "backend_retry" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_raises_when_every_attempt_fails() -> None:
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=AlwaysFailBackend(),
        fallback_name="primary",
        fallback_backend=AlwaysFailBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed"):
        asyncio.run(backend.run("system", "user", {}))


def test_resilient_backend_workers_use_primary_command() -> None:
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=SuccessBackend(),
        fallback_name="fallback",
        fallback_backend=AlwaysFailBackend(),
        retry_policy=RetryPolicy(),
    )

    assert backend.worker_command(model="m1") == ["ok-worker", "--model", "m1"]


def test_retry_policy_delay_is_capped() -> None:
    policy = RetryPolicy(backoff_seconds=1.0, max_backoff_seconds=3.0)

    assert policy.delay(0) == 0.0
    assert policy.delay(1) == 1.0
    assert policy.delay(2) == 2.0
    assert policy.delay(5) == 3.0
    assert RetryPolicy(max_retries=2).max_attempts == 3


def test_codex_backend_emits_stream_telemetry(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []

    class FakeStdout:
        def __init__(self, lines: list[bytes]) -> None:
            self._lines = lines
            self._index = 0

        def __aiter__(self) -> "FakeStdout":
            return self

        async def __anext__(self) -> bytes:
            if self._index >= len(self._lines):
                raise StopAsyncIteration
            line = self._lines[self._index]
            self._index += 1
            return line

    class FakeStderr:
        async def read(self) -> bytes:
            return b""

    class FakeProcess:
        def __init__(self) -> None:
            self.stdout = FakeStdout(
                [
                    b"{\"type\":\"response.output_text.delta\",\"content\":\"hello\"}\n",
                    b"noise-before-json\n",
                    b"{\"type\":\"response.completed\"}\n",
                ]
            )
            self.stderr = FakeStderr()

        async def wait(self) -> int:
            return 0

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess()

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    backend = CodexBackend(event_hook=events.append)

    async def _run() -> str:
        chunks: list[str] = []
        async for chunk in backend.execute("system", "user", context={}):
            chunks.append(chunk)
        return "".join(chunks)

    output = asyncio.run(_run())

    assert output == "hello"
    event_names = [event.get("event") for event in events]
    assert "codex_cli_start" in event_names
    assert "codex_json_event" in event_names
    assert "codex_json_parse_fallback" in event_names
    assert "codex_cli_exit" in event_names


def test_codex_sdk_uses_context_model(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    class FakeResponses:
        def create(self, **kwargs: Any) -> dict[str, Any]:
            captured.update(kwargs)
            return {"output_text": "ok"}

    class FakeClient:
        def __init__(self) -> None:
            self.responses = FakeResponses()

    backend = CodexSDKBackend(model="gpt-5-codex")
    monkeypatch.setattr(backend, "_client", FakeClient())

    async def _run() -> str:
        chunks: list[str] = []
        async for chunk in backend.execute(
            system_prompt="system",
            user_prompt="user",
            context={"model": "gpt-5.3-codex"},
        ):
            chunks.append(chunk)
        return "".join(chunks)

    output = asyncio.run(_run())

    assert output == "ok"
    assert captured["model"] == "gpt-5.3-codex"


def test_cli_worker_launch_failure_raises_spawn_failed(tmp_path: Path) -> None:
    missing = ClaudeCodeBackend(binary=str(tmp_path / "no-such-claude"))
    workers = CliWorkerBackend(launcher=missing, direct=missing)
    request = _request(tmp_path)

    with pytest.raises(SpawnFailed):
        workers.launch(request)

    assert workers.available() is False
    assert not request.prompt_path.exists()
    assert request.stdout_path.parent.is_dir()


def test_cli_worker_run_direct_writes_output_log(tmp_path: Path) -> None:
    direct = SuccessBackend()
    workers = CliWorkerBackend(launcher=direct, direct=direct)
    request = _request(tmp_path, model="m1")

    outcome = asyncio.run(workers.run_direct(request))

    assert outcome.ok is True
    assert outcome.output == "ok"
    assert request.stdout_path.read_text(encoding="utf-8") == "ok\n"
    assert direct.last_context == {"_working_directory": str(tmp_path), "model": "m1"}


def test_cli_worker_run_direct_reports_backend_failure(tmp_path: Path) -> None:
    failing = AlwaysFailBackend()
    workers = CliWorkerBackend(launcher=failing, direct=failing)

    outcome = asyncio.run(workers.run_direct(_request(tmp_path)))

    assert outcome.ok is False
    assert outcome.error == "boom"
