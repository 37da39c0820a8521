import json
import threading
from pathlib import Path

import pytest

from taskswarm.errors import SwarmError
from taskswarm.models import AgentRecord
from taskswarm.state import SessionStore


def _record(agent_id: str, pid: int | None, *, status: str = "running", **fields) -> AgentRecord:
    return AgentRecord(
        id=agent_id,
        role=fields.pop("role", "backend"),
        pid=pid,
        workspace_path=fields.pop("workspace_path", None),
        task=f"task for {agent_id}",
        status=status,  # type: ignore[arg-type]
        **fields,
    )


@pytest.fixture
def store(tmp_path: Path, inspector) -> SessionStore:
    return SessionStore(tmp_path / ".taskswarm", inspector)


def test_ensure_creates_and_reuses_session(store: SessionStore) -> None:
    first = store.ensure("build login")
    second = store.ensure("something else")

    assert first.session_id == second.session_id
    assert second.task_description == "build login"
    payload = json.loads(store.session_file.read_text(encoding="utf-8"))
    assert payload["status"] == "active"
    assert payload["agents"] == []


def test_writes_leave_no_temp_files_or_lock(store: SessionStore, inspector) -> None:
    inspector.alive.add(101)
    store.add_agent(_record("a1", 101))
    store.update_status(101, "completed")

    leftovers = sorted(path.name for path in store.state_dir.iterdir())
    assert leftovers == ["session.json"]
    assert store.find_by_id("a1").status == "completed"
    assert store.find_by_id("a1").completion_time is not None


def test_reconcile_marks_dead_agents_stopped_once(store: SessionStore, inspector) -> None:
    inspector.alive.add(101)
    store.add_agent(_record("alive", 101))
    store.add_agent(_record("dead", 202))
    store.add_agent(_record("direct", None, executed_directly=True))

    changed = store.reconcile()

    assert [agent.id for agent in changed] == ["dead"]
    assert store.find_by_id("dead").status == "stopped"
    assert store.find_by_id("alive").status == "running"
    assert store.find_by_id("direct").status == "running"
    assert store.reconcile() == []
    assert [agent.id for agent in store.active_agents()] == ["alive", "direct"]


def test_corrupt_document_is_quarantined(store: SessionStore) -> None:
    store.state_dir.mkdir(parents=True)
    store.session_file.write_text("{not json", encoding="utf-8")

    session = store.ensure()

    assert session.status == "active"
    assert session.agents == []
    assert store.last_corruption is not None
    quarantined = list(store.state_dir.glob("session.json.corrupt-*"))
    assert len(quarantined) == 1
    assert quarantined[0].read_text(encoding="utf-8") == "{not json"


def test_non_object_document_is_quarantined(store: SessionStore) -> None:
    store.state_dir.mkdir(parents=True)
    store.session_file.write_text("[1, 2]", encoding="utf-8")

    assert store.all_agents() == []
    assert "not a JSON object" in store.last_corruption.reason


def test_pid_reuse_retires_stale_record(store: SessionStore, inspector) -> None:
    inspector.alive.add(300)
    store.add_agent(_record("old", 300))
    store.add_agent(_record("new", 300))

    assert store.find_by_id("old").status == "stopped"
    assert store.find_by_pid(300).id == "new"

    store.update_status(300, "completed")
    assert store.find_by_id("new").status == "completed"
    assert store.find_by_id("old").status == "stopped"


def test_update_agent_respects_expected_status(store: SessionStore) -> None:
    store.add_agent(_record("a1", 11))

    assert store.update_agent("a1", expected_status="starting", status="failed") is None
    updated = store.update_agent("a1", expected_status="running", status="completed")

    assert updated is not None
    assert updated.status == "completed"
    assert store.update_agent("missing", status="failed") is None
    with pytest.raises(AttributeError):
        store.update_agent("a1", colour="blue")


def test_workspace_release_is_claimed_once(store: SessionStore, tmp_path: Path) -> None:
    store.add_agent(_record("a1", 11, workspace_path=str(tmp_path / "w1")))
    store.add_agent(_record("a2", 12))

    assert store.claim_workspace_release("a1") is True
    assert store.claim_workspace_release("a1") is False
    assert store.claim_workspace_release("a2") is False
    assert store.find_by_id("a1").workspace_released is True


def test_status_counts_agents_by_status(store: SessionStore) -> None:
    assert store.status() == {"active": False, "session_id": None, "agents": 0}

    store.ensure("task")
    store.add_agent(_record("a1", 11))
    store.add_agent(_record("a2", 12, status="completed"))

    status = store.status()
    assert status["active"] is True
    assert status["agents"] == 2
    assert status["active_agents"] == 1
    assert status["by_status"] == {"running": 1, "completed": 1}


def test_cleanup_archives_then_removes_document(store: SessionStore) -> None:
    session = store.ensure("task")
    store.add_agent(_record("a1", 11, status="completed"))

    archived = store.cleanup()

    assert archived is not None
    assert archived.parent == store.archives_dir
    assert session.session_id in archived.name
    assert not store.session_file.exists()
    payload = json.loads(archived.read_text(encoding="utf-8"))
    assert [agent["id"] for agent in payload["agents"]] == ["a1"]
    assert store.cleanup() is None


def test_create_archives_previous_session(store: SessionStore) -> None:
    first = store.create("one")
    second = store.create("two")

    assert first.session_id != second.session_id
    assert len(list(store.archives_dir.glob("session_*.json"))) == 1


def test_stale_lock_from_dead_owner_is_broken(store: SessionStore) -> None:
    store.state_dir.mkdir(parents=True)
    store.lock_file.write_text("999999", encoding="utf-8")

    store.ensure("task")

    assert not store.lock_file.exists()


def test_live_lock_owner_times_out(tmp_path: Path, inspector) -> None:
    store = SessionStore(tmp_path / ".taskswarm", inspector, lock_timeout_seconds=0.1)
    store.state_dir.mkdir(parents=True)
    inspector.alive.add(4242)
    store.lock_file.write_text("4242", encoding="utf-8")

    with pytest.raises(SwarmError, match="session lock"):
        store.ensure()


def test_concurrent_ensure_shares_one_new_session(tmp_path: Path, inspector) -> None:
    state_dir = tmp_path / ".taskswarm"
    first = SessionStore(state_dir, inspector)
    second = SessionStore(state_dir, inspector)
    first.ensure("old run")
    first.close()
    seen: dict[str, str] = {}
    threads: list[threading.Thread] = []
    real_create = first.create

    def _second_ensure() -> None:
        seen["second"] = second.ensure("late").session_id

    def _create_while_other_ensures(task_description=None):
        other = threading.Thread(target=_second_ensure)
        threads.append(other)
        other.start()
        other.join(0.2)
        return real_create(task_description)

    first.create = _create_while_other_ensures  # type: ignore[method-assign]

    created = first.ensure("new run")
    threads[0].join(5)

    assert seen["second"] == created.session_id
    assert first.current().task_description == "new run"
    assert len(list(first.archives_dir.glob("session_*.json"))) == 1
