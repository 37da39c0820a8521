import tomllib
from pathlib import Path

from taskswarm import __version__
from taskswarm.config import SwarmConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "taskswarm.toml"
    config = SwarmConfig.default()
    config.project.name = "shop"
    config.project.type = "django"
    config.project.technology_stack = ["django", "postgres"]
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.agents.model = "gpt-5-codex"
    config.limits.max_concurrent_agents = 2
    config.spawn.jitter_min_seconds = 0.0
    config.spawn.direct_on_denied = False
    config.monitor.stuck_threshold_seconds = 120.0
    config.monitor.default_action = "kill"
    config.cleanup.temp_patterns = ["tmp/*.log"]
    config.logging.json_logs = True

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "shop"
    assert loaded.project.type == "django"
    assert loaded.project.technology_stack == ["django", "postgres"]
    assert loaded.backend.primary == "codex"
    assert loaded.backend.max_retries == 3
    assert loaded.agents.model == "gpt-5-codex"
    assert loaded.limits.max_concurrent_agents == 2
    assert loaded.limits.max_memory_mb == 2048
    assert loaded.spawn.jitter_min_seconds == 0.0
    assert loaded.spawn.direct_on_denied is False
    assert loaded.monitor.stuck_threshold_seconds == 120.0
    assert loaded.monitor.default_action == "kill"
    assert loaded.cleanup.temp_patterns == ["tmp/*.log"]
    assert loaded.logging.json_logs is True


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == SwarmConfig.default()
    assert loaded.monitor.stuck_threshold_seconds == 600.0
    assert loaded.monitor.decision_timeout_seconds == 30.0


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(SwarmConfig.default())

    for section in ("project", "backend", "agents", "limits", "spawn", "monitor", "cleanup"):
        assert f"[{section}]" in rendered
    assert "max_concurrent_agents = 4" in rendered
    assert "jitter_min_seconds = 2.0" in rendered
    assert "decision_timeout_seconds" in rendered
    assert "[logging]" in rendered


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
