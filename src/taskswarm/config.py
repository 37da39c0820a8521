from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex", "codex_sdk"]
DecisionAction = Literal["continue", "restart", "kill", "debug"]

STATE_DIRNAME = ".taskswarm"
CONFIG_FILENAME = "taskswarm.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "Project"
    type: str = "generic"
    technology_stack: list[str] = field(default_factory=list)
    test_command: str = "pytest -q"
    code_standards: list[str] = field(
        default_factory=lambda: [
            "Follow framework conventions",
            "Write tests for all new features",
        ]
    )


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    retry_max_backoff_seconds: float = 30.0
    retry_jitter_seconds: float = 0.25
    timeout_seconds: float = 900.0
    skip_permissions: bool = True


@dataclass(slots=True)
class AgentsConfig:
    model: str = ""


@dataclass(slots=True)
class LimitsConfig:
    max_concurrent_agents: int = 4
    max_memory_mb: int = 2048
    max_disk_mb: int = 1024
    load_factor: float = 1.5


@dataclass(slots=True)
class SpawnConfig:
    worktree_enabled: bool = True
    branch_prefix: str = "swarm"
    jitter_min_seconds: float = 2.0
    jitter_max_seconds: float = 4.0
    phase_pause_seconds: float = 2.0
    direct_on_denied: bool = True


@dataclass(slots=True)
class MonitorConfig:
    poll_interval_seconds: float = 30.0
    stuck_threshold_seconds: float = 600.0
    memory_threshold_mb: float = 1000.0
    decision_timeout_seconds: float = 30.0
    default_action: DecisionAction = "continue"
    kill_grace_seconds: float = 2.0
    detect_conflicts: bool = True


@dataclass(slots=True)
class CleanupConfig:
    step_timeout_seconds: float = 30.0
    temp_patterns: list[str] = field(
        default_factory=lambda: [
            ".taskswarm/prompts/*.md",
            ".taskswarm/*.tmp",
        ]
    )


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    json_logs: bool = False


@dataclass(slots=True)
class SwarmConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    spawn: SpawnConfig = field(default_factory=SpawnConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> SwarmConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> SwarmConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            limits=LimitsConfig(**data.get("limits", {})),
            spawn=SpawnConfig(**data.get("spawn", {})),
            monitor=MonitorConfig(**data.get("monitor", {})),
            cleanup=CleanupConfig(**data.get("cleanup", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": asdict(self.project),
            "backend": asdict(self.backend),
            "agents": asdict(self.agents),
            "limits": asdict(self.limits),
            "spawn": asdict(self.spawn),
            "monitor": asdict(self.monitor),
            "cleanup": asdict(self.cleanup),
            "logging": asdict(self.logging),
        }


SECTION_ORDER = ["project", "backend", "agents", "limits", "spawn", "monitor", "cleanup", "logging"]


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        if rendered.endswith("."):
            rendered += "0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: SwarmConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> SwarmConfig:
    if not path.exists():
        return SwarmConfig.default()
    return SwarmConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: SwarmConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
