import json
from pathlib import Path

import pytest

from taskwarden.anomaly import default_rules
from taskwarden.clock import parse_iso
from taskwarden.config import SupervisionConfig
from taskwarden.errors import StateConflictError, StateStoreError
from taskwarden.models import ExecutionResult, ExecutionSession, Task
from taskwarden.status import compute_status
from taskwarden.store import StateStore


def _tasks() -> list[Task]:
    return [
        Task(id="T1", requirement_id="REQ-1", name="Build API", category="backend"),
        Task(
            id="T2",
            requirement_id="REQ-1",
            name="Test API",
            category="testing",
            depends_on=["T1"],
        ),
    ]


def test_tasks_roundtrip(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    tasks = _tasks()

    store.save_tasks(tasks)

    assert [task.to_dict() for task in store.load_tasks()] == [task.to_dict() for task in tasks]
    on_disk = json.loads((tmp_path / "tasks.json").read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == StateStore.SCHEMA_VERSION
    assert [item["id"] for item in on_disk["data"]["tasks"]] == ["T1", "T2"]


def test_supervision_document_keeps_sections_independent(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    session = ExecutionSession(
        session_id="session_T1_abc",
        task_id="T1",
        created_at="2026-03-01T10:00:00+00:00",
        max_retries=3,
        status="completed",
        result=ExecutionResult(success=True, summary="ok", quality_score=92.0),
    )
    config = SupervisionConfig()
    rules = default_rules(config)
    status = compute_status(_tasks(), [session], config, parse_iso("2026-03-01T12:00:00+00:00"))

    store.save_supervision(sessions=[session], config=config.to_dict(), rules=rules)
    store.save_supervision(status=status)

    assert [item.to_dict() for item in store.load_sessions()] == [session.to_dict()]
    assert store.load_status() == status
    assert store.load_rules() == rules
    assert store.load_supervision()["config"] == config.to_dict()


def test_empty_store_has_no_state(tmp_path: Path) -> None:
    store = StateStore(tmp_path)

    assert store.load_tasks() == []
    assert store.load_sessions() == []
    assert store.load_status() is None
    assert store.load_rules() is None
    assert store.get_envelope("tasks")["revision"] == 0


def test_state_schema_migrates_legacy_payload(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    legacy = {"tasks": [_tasks()[0].to_dict()]}
    (tmp_path / "tasks.json").write_text(json.dumps(legacy), encoding="utf-8")

    assert [task.id for task in store.load_tasks()] == ["T1"]

    store.save_tasks(_tasks())
    on_disk = json.loads((tmp_path / "tasks.json").read_text(encoding="utf-8"))
    assert on_disk["revision"] == 1
    assert len(on_disk["data"]["tasks"]) == 2


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("supervision", {"count": 1})
    first_revision = store.get_envelope("supervision")["revision"]

    store.update_json(
        "supervision", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )
    second_revision = store.get_envelope("supervision")["revision"]

    assert store.get_json("supervision")["count"] == 2
    assert second_revision > first_revision


def test_stale_expected_revision_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    revision = store.set_json("tasks", {"tasks": []})
    store.set_json("tasks", {"tasks": []}, expected_revision=revision)

    with pytest.raises(StateConflictError):
        store.set_json("tasks", {"tasks": []}, expected_revision=revision)

    assert not (tmp_path / ".lock").exists()


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(StateStoreError):
        StateStore(tmp_path).set_json("context", {})


def test_corrupt_state_raises(tmp_path: Path) -> None:
    (tmp_path / "tasks.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StateStoreError):
        StateStore(tmp_path).load_tasks()


def test_held_lock_times_out(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    (tmp_path / ".lock").write_text("123", encoding="utf-8")

    with pytest.raises(StateStoreError):
        with store._state_lock(timeout_seconds=0.05):
            pass


def test_saved_sessions_never_overwrite_a_stored_terminal_status(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    cancelled = ExecutionSession(
        session_id="session_T1_abc",
        task_id="T1",
        created_at="2026-03-01T10:00:00+00:00",
        max_retries=3,
        status="cancelled",
    )
    other = ExecutionSession(
        session_id="session_T2_def",
        task_id="T2",
        created_at="2026-03-01T10:00:00+00:00",
        max_retries=3,
        status="running",
    )
    store.save_supervision(sessions=[cancelled, other])

    stale = ExecutionSession.from_dict({**cancelled.to_dict(), "status": "completed"})
    store.save_supervision(sessions=[stale])

    assert {session.session_id: session.status for session in store.load_sessions()} == {
        "session_T1_abc": "cancelled",
        "session_T2_def": "running",
    }


def test_save_tasks_checks_the_expected_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.save_tasks(_tasks())
    revision = store.revision("tasks")
    store.save_tasks(_tasks()[:1])

    with pytest.raises(StateConflictError):
        store.save_tasks(_tasks(), expected_revision=revision)

    assert [task.id for task in store.load_tasks()] == ["T1"]
