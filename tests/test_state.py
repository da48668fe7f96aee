import json
import subprocess
from pathlib import Path

import pytest

from forge.errors import NotFoundError
from forge.state import (
    ExecutionRepository,
    StateStore,
    StateStoreError,
    TaskAttemptRepository,
    VersionRepository,
)


def test_store_roundtrip_writes_envelope(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state")
    payload = {"b": {"id": "b"}, "a": {"id": "a"}}
    store.set_json("versions", payload)

    on_disk = json.loads((tmp_path / "state" / "versions.json").read_text(encoding="utf-8"))

    assert store.get_json("versions") == payload
    assert on_disk["schema_version"] == StateStore.SCHEMA_VERSION
    assert on_disk["revision"] == 2
    assert list(on_disk["data"]) == ["b", "a"]
    assert not (tmp_path / "state" / ".lock").exists()


def test_store_wraps_legacy_payload(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "executions.json").write_text(json.dumps({"legacy": True}), encoding="utf-8")
    store = StateStore(state_dir)

    assert store.get_json("executions") == {"legacy": True}
    assert store.get_envelope("executions")["revision"] == 1


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("attempts", {"count": 1})
    first_revision = store.get_envelope("attempts")["revision"]

    store.update_json(
        "attempts", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )
    second_revision = store.get_envelope("attempts")["revision"]

    assert store.get_json("attempts")["count"] == 2
    assert second_revision > first_revision


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    store.set_json("versions", {})

    with pytest.raises(StateStoreError, match="Concurrent state update detected"):
        store.set_json("versions", {"x": {}}, expected_revision=1)


def test_unknown_namespace_and_corrupt_file(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    (tmp_path / "versions.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(StateStoreError, match="Unsupported namespace"):
        store.get_json("metrics")
    with pytest.raises(StateStoreError, match="Corrupt state file versions.json"):
        store.get_json("versions")


def test_lock_timeout(tmp_path: Path) -> None:
    store = StateStore(tmp_path, lock_timeout_seconds=0.05)
    store.lock_file.write_text("123", encoding="utf-8")

    with pytest.raises(StateStoreError, match="Timed out waiting for state lock"):
        store.set_json("versions", {})


def test_version_repository(tmp_path: Path) -> None:
    versions = VersionRepository(StateStore(tmp_path))
    first = versions.create("/project", "v1")
    second = versions.create("/project", "v2", dev_status="ready")

    updated = versions.update_status(first.id, dev_status="reviewing")

    assert [version.name for version in versions.list_all()] == ["v1", "v2"]
    assert updated.dev_status == "reviewing"
    assert updated.runtime_status == "not_configured"
    assert versions.get(second.id).dev_status == "ready"
    assert versions.get("missing") is None
    with pytest.raises(NotFoundError, match="Version not found: missing"):
        versions.update_status("missing", dev_status="ready")


def test_execution_repository_lifecycle(tmp_path: Path) -> None:
    executions = ExecutionRepository(StateStore(tmp_path))
    older = executions.create("v1", total_tasks=3)
    executions.complete(older.id, "completed")
    current = executions.create("v1", total_tasks=3, pre_execution_commit="abc")
    other = executions.create("v2")

    assert [item.id for item in executions.find_by_version("v1")] == [current.id, older.id]
    assert executions.find_running_or_paused("v1").id == current.id
    assert {item.id for item in executions.find_stale(30.0)} == {current.id, other.id}

    paused = executions.set_paused(current.id, True)
    assert (paused.status, paused.is_paused) == ("paused", True)

    progressed = executions.update_progress(current.id, completed_tasks=1, current_task_id="002")
    assert (progressed.completed_tasks, progressed.current_task_id) == (1, "002")
    cleared = executions.update_progress(current.id, current_task_id=None)
    assert cleared.current_task_id is None
    assert cleared.completed_tasks == 1

    resumed = executions.set_paused(current.id, False)
    assert (resumed.status, resumed.is_paused) == ("running", False)


def test_terminal_status_rules(tmp_path: Path) -> None:
    executions = ExecutionRepository(StateStore(tmp_path))
    aborted = executions.create("v1")
    failed = executions.create("v1")

    executions.complete(aborted.id, "aborted")
    assert executions.complete(aborted.id, "completed").status == "aborted"
    assert executions.set_paused(aborted.id, True).status == "aborted"

    executions.complete(failed.id, "failed")
    assert executions.complete(failed.id, "completed").status == "failed"
    final = executions.complete(failed.id, "aborted")
    assert final.status == "aborted"
    assert final.is_terminal
    assert final.completed_at

    with pytest.raises(ValueError, match="Not a terminal execution status"):
        executions.complete(failed.id, "paused")


def test_attempt_numbers_are_per_task(tmp_path: Path) -> None:
    attempts = TaskAttemptRepository(StateStore(tmp_path))
    first = attempts.create("exec-1", "001")
    attempts.complete(first.id, "failed", "bad output")
    second = attempts.create("exec-1", "001")
    other = attempts.create("exec-1", "002")
    elsewhere = attempts.create("exec-2", "001")

    assert (first.attempt_number, second.attempt_number) == (1, 2)
    assert other.attempt_number == 1
    assert elsewhere.attempt_number == 1
    assert attempts.next_attempt_number("exec-1", "001") == 3
    assert attempts.get(first.id).error_message == "bad output"
    assert [item.id for item in attempts.find_by_execution("exec-1")] == [
        first.id,
        second.id,
        other.id,
    ]
    assert {item.id for item in attempts.find_running("exec-1")} == {second.id, other.id}

    with pytest.raises(ValueError):
        attempts.complete(second.id, "running")


def _rewrite_execution(store: StateStore, execution_id: str, **fields: object) -> None:
    def _updater(data: dict) -> dict:
        data[execution_id].update(fields)
        return data

    store.update_json("executions", _updater)


def _dead_pid() -> int:
    process = subprocess.Popen(["git", "--version"], stdout=subprocess.DEVNULL)
    process.wait()
    return process.pid


def test_loop_ownership_claim_heartbeat_and_release(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    executions = ExecutionRepository(store)
    execution = executions.create("v1")

    claimed = executions.claim_loop(execution.id, "owner-a", 30.0)

    assert claimed is not None and claimed.owner_id == "owner-a"
    assert claimed.heartbeat_at
    assert claimed.has_live_owner(30.0)
    assert executions.find_stale(30.0) == []
    assert executions.claim_loop(execution.id, "owner-b", 30.0) is None
    assert executions.heartbeat(execution.id, "owner-a")
    assert not executions.heartbeat(execution.id, "owner-b")

    executions.release_loop(execution.id, "owner-b")
    assert executions.get(execution.id).owner_id == "owner-a"
    executions.release_loop(execution.id, "owner-a")

    released = executions.get(execution.id)
    assert (released.owner_id, released.owner_pid, released.heartbeat_at) == (None, None, None)
    assert [item.id for item in executions.find_stale(30.0)] == [execution.id]


def test_owner_with_old_heartbeat_or_dead_pid_is_stale(tmp_path: Path) -> None:
    store = StateStore(tmp_path)
    executions = ExecutionRepository(store)
    silent = executions.create("v1")
    crashed = executions.create("v2")
    executions.claim_loop(silent.id, "owner-a", 30.0)
    executions.claim_loop(crashed.id, "owner-b", 30.0)

    _rewrite_execution(store, silent.id, heartbeat_at="2000-01-01T00:00:00+00:00")
    _rewrite_execution(store, crashed.id, owner_pid=_dead_pid())

    assert {item.id for item in executions.find_stale(30.0)} == {silent.id, crashed.id}
    taken = executions.claim_loop(silent.id, "owner-c", 30.0)
    assert taken is not None and taken.owner_id == "owner-c"
    assert not executions.heartbeat(silent.id, "owner-a")
