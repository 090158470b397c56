import json
from pathlib import Path

import pytest

from reviewgate.state.store import EVENT_WINDOW, StateError, StateStore


def test_state_store_roundtrip(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state")
    payload = {"tasks": [{"id": "task-1", "status": "active"}]}
    store.set_json("tasks", payload)

    assert store.get_json("tasks") == payload
    assert (tmp_path / "state" / "tasks.json").exists()
    assert not (tmp_path / "state" / ".lock").exists()


def test_state_schema_wraps_legacy_payload(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    local_path = tmp_path / "metrics.json"
    local_path.write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.get_json("metrics") == {"legacy": True}

    store.set_json("metrics", {"legacy": False})
    on_disk = json.loads(local_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == StateStore.SCHEMA_VERSION
    assert on_disk["revision"] == 1
    assert on_disk["data"] == {"legacy": False}


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("metrics", {"count": 1})
    first_revision = store.get_envelope("metrics")["revision"]

    store.update_json(
        "metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )
    second_revision = store.get_envelope("metrics")["revision"]

    assert store.get_json("metrics")["count"] == 2
    assert second_revision > first_revision


def test_stale_revision_is_refused(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("runs", {})

    with pytest.raises(StateError, match="Concurrent state update"):
        store.set_json("runs", {"r1": {}}, expected_revision=0)


def test_unknown_namespace_and_corrupt_file(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    (tmp_path / "tasks.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StateError, match="Unsupported namespace"):
        store.get_json("context")
    with pytest.raises(StateError, match="corrupt"):
        store.get_tasks()


def test_upsert_task_replaces_by_id(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.upsert_task({"id": "a", "status": "active"})
    store.upsert_task({"id": "b", "status": "active"})
    store.upsert_task({"id": "a", "status": "complete"})

    assert [task["id"] for task in store.get_tasks()] == ["a", "b"]
    assert store.get_task("a") == {"id": "a", "status": "complete"}
    assert store.get_task("missing") is None


def test_escalations_and_runs_accumulate(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.add_escalation({"task_id": "a", "stage": "code_review"})
    store.add_escalation({"task_id": "a", "directive": "abandon"})
    store.upsert_run("r1", {"status": "running"})
    store.upsert_run("r1", {"status": "finished", "total_tasks": 2})

    assert len(store.get_escalations()) == 2
    assert store.get_runs() == {"r1": {"status": "finished", "total_tasks": 2}}


def test_record_event_keeps_a_rolling_window(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    for index in range(EVENT_WINDOW + 5):
        store.record_event({"event": "backend_retry", "attempt": index})

    metrics = store.get_metrics()
    assert len(metrics["events"]) == EVENT_WINDOW
    assert metrics["events"][0]["attempt"] == 5
    assert metrics["event_counts"] == {"backend_retry": EVENT_WINDOW + 5}
