from __future__ import annotations

import asyncio
import json
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskswarm.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CliWorkerBackend,
    CodexBackend,
    CodexSDKBackend,
    ResilientBackend,
    RetryPolicy,
    WorkerBackend,
)
from taskswarm.cleanup import CleanupManager
from taskswarm.config import (
    CONFIG_FILENAME,
    STATE_DIRNAME,
    BackendName,
    SwarmConfig,
    load_config,
    save_config,
)
from taskswarm.decisions import DecisionBroker, DecisionRequest
from taskswarm.decomposer import TaskDecomposer
from taskswarm.errors import AdmissionDenied, SwarmError
from taskswarm.governor import ResourceGovernor
from taskswarm.health import HealthMonitor, InterruptController
from taskswarm.log import configure_logging
from taskswarm.models import ROLES, Subtask, utcnow_iso
from taskswarm.process import ProcessInspector, PsutilProcessInspector
from taskswarm.scheduler import PhaseScheduler
from taskswarm.spawner import WorkerSupervisor
from taskswarm.specialists import sanitize_task, specialist_for
from taskswarm.state import SessionStore
from taskswarm.timer import PeriodicTimer
from taskswarm.workspace import GitWorktreeBackend, WorkspaceBackend, build_workspace_backend


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: SwarmConfig
    inspector: ProcessInspector
    sessions: SessionStore
    workspaces: WorkspaceBackend
    governor: ResourceGovernor
    cleanup: CleanupManager
    supervisor: WorkerSupervisor
    scheduler: PhaseScheduler
    decomposer: TaskDecomposer

    def project_context(self) -> dict[str, Any]:
        project = self.config.project
        return {
            "type": project.type,
            "name": project.name,
            "technology_stack": list(project.technology_stack),
        }


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _build_single_backend(
    backend_name: BackendName, repo_root: Path, config: SwarmConfig
) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    if backend_name == "codex_sdk":
        return CodexSDKBackend(
            model=config.agents.model or "gpt-5-codex", working_directory=repo_root
        )
    return ClaudeCodeBackend(
        working_directory=repo_root, skip_permissions=config.backend.skip_permissions
    )


def _record_event(state_dir: Path, event: dict[str, Any]) -> None:
    payload = dict(event)
    payload["at"] = utcnow_iso()
    state_dir.mkdir(parents=True, exist_ok=True)
    with (state_dir / "events.jsonl").open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")


def _build_backend(config: SwarmConfig, repo_root: Path) -> ResilientBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        max_backoff_seconds=max(0.0, float(config.backend.retry_max_backoff_seconds)),
        jitter_seconds=max(0.0, float(config.backend.retry_jitter_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    state_dir = repo_root / STATE_DIRNAME
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root, config),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root, config),
        retry_policy=policy,
        event_hook=lambda event: _record_event(state_dir, event),
    )


def _build_workers(config: SwarmConfig, repo_root: Path) -> WorkerBackend:
    backend = _build_backend(config, repo_root)
    return CliWorkerBackend(launcher=backend, direct=backend)


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    configure_logging(config.logging.level, config.logging.json_logs)
    state_dir = repo_root / STATE_DIRNAME
    inspector = PsutilProcessInspector()
    sessions = SessionStore(state_dir, inspector)
    workspaces = build_workspace_backend(repo_root, branch_prefix=config.spawn.branch_prefix)
    governor = ResourceGovernor(
        sessions, inspector, config.limits, work_dir=state_dir, repo_root=repo_root
    )
    cleanup = CleanupManager(
        repo_root,
        sessions,
        workspaces,
        inspector,
        config.cleanup,
        kill_grace_seconds=config.monitor.kill_grace_seconds,
    )
    workers = _build_workers(config, repo_root)
    supervisor = WorkerSupervisor(
        repo_root,
        config,
        sessions,
        governor,
        workers,
        inspector,
        workspaces=workspaces,
        cleanup=cleanup,
        event_hook=lambda event: _record_event(state_dir, event),
    )
    decomposer = TaskDecomposer()
    scheduler = PhaseScheduler(
        supervisor,
        decomposer=decomposer,
        phase_pause_seconds=config.spawn.phase_pause_seconds,
        direct_on_denied=config.spawn.direct_on_denied,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        inspector=inspector,
        sessions=sessions,
        workspaces=workspaces,
        governor=governor,
        cleanup=cleanup,
        supervisor=supervisor,
        scheduler=scheduler,
        decomposer=decomposer,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _project_context(runtime: Runtime, project_type: str | None) -> dict[str, Any]:
    context = runtime.project_context()
    if project_type:
        context["type"] = project_type
    return context


config_option = click.option(
    "--config", "config_value", default=CONFIG_FILENAME, show_default=True
)


@click.group()
def cli() -> None:
    """taskswarm CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["claude", "codex", "codex_sdk"]), default=None)
@config_option
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    state_dir = repo_root / STATE_DIRNAME
    for child in ("logs", "prompts", "archives"):
        (state_dir / child).mkdir(parents=True, exist_ok=True)
    workspaces = build_workspace_backend(repo_root, branch_prefix=config.spawn.branch_prefix)
    if isinstance(workspaces, GitWorktreeBackend):
        workspaces.exclude_state_dir()

    click.echo(f"Initialized taskswarm in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary} (fallback {config.backend.fallback})")
    mode = "git worktrees" if isinstance(workspaces, GitWorktreeBackend) else "directory copies"
    click.echo(f"Workspaces: {mode}")


@cli.command("plan")
@click.argument("description")
@click.option("--type", "project_type", default=None, help="Project type, e.g. rails or react.")
@config_option
def plan_command(description: str, project_type: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    execution_plan = runtime.decomposer.decompose(
        description, _project_context(runtime, project_type)
    )
    _echo_json(execution_plan.to_dict())


@cli.command("run")
@click.argument("description")
@click.option("--type", "project_type", default=None, help="Project type, e.g. rails or react.")
@config_option
def run_command(description: str, project_type: str | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        execution_plan, result = asyncio.run(
            runtime.scheduler.run_task(description, _project_context(runtime, project_type))
        )
    except SwarmError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json({"plan": execution_plan.to_dict(), "result": result.to_dict()})
    if not result.ok:
        raise click.exceptions.Exit(1)


@cli.command("spawn")
@click.argument("description")
@click.option("--role", type=click.Choice(list(ROLES)), default="general", show_default=True)
@click.option(
    "--direct/--no-direct",
    default=None,
    help="Run the subtask in-process when admission is denied (default from config).",
)
@config_option
def spawn_command(description: str, role: str, direct: bool | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    if direct is None:
        direct = runtime.config.spawn.direct_on_denied
    subtask = Subtask(
        id=f"{role}-manual",
        role=role,  # type: ignore[arg-type]
        description=sanitize_task(description),
        context=specialist_for(role).context(runtime.config.project.type),
    )

    async def _spawn() -> Any:
        runtime.sessions.reconcile()
        result = await runtime.supervisor.spawn(subtask)
        if result.status != "denied":
            return result
        if not direct:
            raise AdmissionDenied(result.reasons)
        reasons = list(result.reasons)
        result = await runtime.supervisor.execute_directly(subtask)
        result.reasons = reasons
        return result

    try:
        result = asyncio.run(_spawn())
    except SwarmError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(result.to_dict())
    if not result.ok:
        raise click.exceptions.Exit(1)


@cli.command("status")
@config_option
def status_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    reconciled = runtime.sessions.reconcile()
    admission = runtime.governor.can_spawn()
    _echo_json(
        {
            "session": runtime.sessions.status(),
            "agents": [agent.to_dict() for agent in runtime.sessions.all_agents()],
            "reconciled": [agent.id for agent in reconciled],
            "resources": runtime.governor.snapshot().to_dict(),
            "admission": {"allowed": admission.allowed, "reasons": admission.reasons},
        }
    )


@cli.command("review")
@config_option
def review_command(config_value: str) -> None:
    """Report what each agent workspace changed and committed."""
    runtime = _runtime(config_value)
    runtime.sessions.reconcile()
    _echo_json(runtime.supervisor.review_workspaces().to_dict())


@cli.command("stop")
@click.argument("pid", type=int, required=False)
@click.option("--all", "stop_all", is_flag=True, default=False)
@config_option
def stop_command(pid: int | None, stop_all: bool, config_value: str) -> None:
    if pid is None and not stop_all:
        raise click.UsageError("Pass a PID or --all.")
    runtime = _runtime(config_value)
    if stop_all:
        _echo_json({"stopped": runtime.supervisor.stop_all()})
        return
    if not runtime.supervisor.stop(pid):
        raise click.ClickException(f"Could not stop process {pid}.")
    _echo_json({"stopped": 1, "pid": pid})


def _prompt_operator(request: DecisionRequest) -> None:
    click.echo(
        f"[{request.id}] {request.message}\n"
        f"  answer with: [{request.id}] {'|'.join(request.options)} "
        f"(default {request.default})",
        err=True,
    )


def _read_answers(broker: DecisionBroker, stream: Any) -> None:
    for raw in stream:
        parts = raw.strip().split()
        if not parts:
            continue
        pending = broker.pending()
        if len(parts) == 1:
            if not pending:
                click.echo("No decision is pending.", err=True)
                continue
            request_id, action = pending[0].id, parts[0]
        else:
            request_id, action = parts[0], parts[1]
        try:
            accepted = broker.respond_threadsafe(request_id, action, responder="stdin")
        except ValueError as exc:
            click.echo(str(exc), err=True)
            continue
        if not accepted:
            click.echo(f"Decision {request_id} is no longer pending.", err=True)


async def _monitor(runtime: Runtime, *, once: bool) -> list[dict[str, Any]]:
    settings = runtime.config.monitor
    state_dir = runtime.repo_root / STATE_DIRNAME
    broker = DecisionBroker(
        timeout_seconds=settings.decision_timeout_seconds,
        event_hook=lambda event: _record_event(state_dir, event),
    )
    broker.add_responder(_prompt_operator)
    controller = InterruptController(
        runtime.supervisor,
        broker,
        settings,
        event_hook=lambda event: _record_event(state_dir, event),
    )
    monitor = HealthMonitor(runtime.supervisor, controller, settings)
    runtime.sessions.reconcile()
    if once:
        return [item.to_dict() for item in await monitor.poll_once()]

    reader = threading.Thread(
        target=_read_answers,
        args=(broker, click.get_text_stream("stdin")),
        name="decision-reader",
        daemon=True,
    )
    reader.start()
    enforcer = PeriodicTimer(
        settings.poll_interval_seconds,
        lambda: asyncio.to_thread(runtime.governor.enforce_limits),
        name="limit-enforcer",
    )

    def _cancel() -> None:
        monitor.cancel()
        enforcer.cancel()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _cancel)
    monitor.start()
    enforcer.start()
    await monitor.wait()
    enforcer.cancel()
    await enforcer.wait()
    return []


@cli.command("monitor")
@click.option("--once", is_flag=True, default=False, help="Poll a single time and exit.")
@config_option
def monitor_command(once: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        assessments = asyncio.run(_monitor(runtime, once=once))
    except SwarmError as exc:
        raise click.ClickException(str(exc)) from exc
    if once:
        _echo_json(assessments)
    else:
        click.echo("Monitoring stopped; agents keep running.", err=True)


@cli.command("cleanup")
@click.option("--archive", is_flag=True, default=False, help="Archive and close the session.")
@click.option("--force", is_flag=True, default=False, help="Archive even with active agents.")
@config_option
def cleanup_command(archive: bool, force: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    runtime.sessions.reconcile()
    report = runtime.cleanup.sweep()
    payload: dict[str, Any] = {"sweep": report.to_dict()}
    if archive:
        try:
            archived = runtime.cleanup.archive_session(force=force)
        except SwarmError as exc:
            raise click.ClickException(str(exc)) from exc
        payload["archived"] = str(archived) if archived else None
    _echo_json(payload)


@cli.command("doctor")
@config_option
def doctor_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    checks = runtime.supervisor.preflight()
    _echo_json(checks)
    if any(check["required"] and not check["ok"] for check in checks):
        raise click.exceptions.Exit(1)
