from __future__ import annotations

import json
import threading

import pytest

from carrier.exceptions import NotFoundError, RegistryError, StateConflictError, ValidationError
from carrier.models import Status
from carrier.registry import RegistryLock, RegistryStore, write_json_atomic


def _write_fleet(root, fleet_id="code-change", tasks=None, legacy=False):
    tasks = tasks or [
        {"id": "analyze", "agent": "analyzer", "nextTasks": [{"taskId": "implement"}]},
        {"id": "implement", "agent": "coder", "nextTasks": [{"taskId": "complete"}]},
    ]
    fleets = root / "fleets"
    if legacy:
        fleets.mkdir(parents=True, exist_ok=True)
        path = fleets / f"{fleet_id}.json"
    else:
        (fleets / fleet_id).mkdir(parents=True, exist_ok=True)
        path = fleets / fleet_id / f"{fleet_id}.json"
    path.write_text(json.dumps({"id": fleet_id, "tasks": tasks}))
    return path


def _make_store(tmp_path, **kwargs):
    root = tmp_path / ".carrier"
    _write_fleet(root)
    return RegistryStore(root, **kwargs)


# ---------------------------------------------------------------------------
# Fleet definitions
# ---------------------------------------------------------------------------


class TestFleetDefinitions:
    def test_load_fleet_from_directory_layout(self, tmp_path):
        store = _make_store(tmp_path)
        fleet = store.load_fleet("code-change")
        assert [t.id for t in fleet.tasks] == ["analyze", "implement"]
        assert fleet.tasks[0].next_tasks[0].task_id == "implement"

    def test_load_fleet_legacy_flat_file(self, tmp_path):
        root = tmp_path / ".carrier"
        _write_fleet(root, "legacy", legacy=True)
        store = RegistryStore(root)
        assert store.load_fleet("legacy").id == "legacy"
        assert "legacy" in store.list_fleets()

    def test_missing_fleet_raises_not_found(self, tmp_path):
        store = _make_store(tmp_path)
        with pytest.raises(NotFoundError):
            store.load_fleet("nope")

    def test_malformed_fleet_raises_validation_error(self, tmp_path):
        store = _make_store(tmp_path)
        bad = store.carrier_path / "fleets" / "broken"
        bad.mkdir()
        (bad / "broken.json").write_text("{not json")
        with pytest.raises(ValidationError):
            store.load_fleet("broken")

    def test_fleet_without_tasks_cannot_deploy(self, tmp_path):
        store = _make_store(tmp_path)
        _write_fleet(store.carrier_path, "empty", tasks=[])
        (store.carrier_path / "fleets" / "empty" / "empty.json").write_text(
            json.dumps({"id": "empty", "tasks": []})
        )
        with pytest.raises(ValidationError):
            store.create("empty", "request")


# ---------------------------------------------------------------------------
# Create and lookup
# ---------------------------------------------------------------------------


class TestCreate:
    def test_create_writes_layout(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "Fix the login bug")

        folder = store.deployment_dir(deployed.id)
        assert deployed.id == "1"
        assert deployed.status == Status.PENDING
        assert deployed.current_task == "analyze"
        assert (folder / "request.md").read_text() == "Fix the login bug"
        assert (folder / "outputs").is_dir()
        metadata = json.loads((folder / "metadata.json").read_text())
        assert metadata["fleetId"] == "code-change"
        assert [t["taskId"] for t in metadata["tasks"]] == ["analyze", "implement"]

    def test_ids_are_monotonic(self, tmp_path):
        store = _make_store(tmp_path)
        ids = [store.create("code-change", f"request {i}").id for i in range(3)]
        assert ids == ["1", "2", "3"]

    def test_ids_never_reused_after_removal(self, tmp_path):
        store = _make_store(tmp_path)
        first = store.create("code-change", "a")
        second = store.create("code-change", "b")
        store.remove(second.id)
        store.remove(first.id)
        assert store.create("code-change", "c").id == "3"

    def test_next_id_recovers_from_stale_counter(self, tmp_path):
        store = _make_store(tmp_path)
        store.create("code-change", "a")
        store.create("code-change", "b")
        data = json.loads(store.registry_path.read_text())
        data["nextId"] = 1
        store.registry_path.write_text(json.dumps(data))
        assert store.create("code-change", "c").id == "3"

    def test_unique_id_format_and_lookup(self, tmp_path):
        store = _make_store(tmp_path)
        first = store.create("code-change", "a")
        second = store.create("code-change", "b")
        assert first.unique_id.startswith("code-change-001-")
        assert second.unique_id.startswith("code-change-002-")
        assert len(first.unique_id.rsplit("-", 1)[1]) == 8
        assert store.get(second.unique_id).id == second.id

    def test_get_unknown_raises_not_found(self, tmp_path):
        store = _make_store(tmp_path)
        with pytest.raises(NotFoundError):
            store.get("42")

    def test_malformed_registry_reads_as_empty(self, tmp_path):
        store = _make_store(tmp_path)
        store.registry_path.parent.mkdir(parents=True)
        store.registry_path.write_text("{corrupt")
        assert store.list() == []
        assert store.create("code-change", "a").id == "1"

    def test_list_filters_by_status(self, tmp_path):
        store = _make_store(tmp_path)
        a = store.create("code-change", "a")
        store.create("code-change", "b")
        store.update_fleet_status(a.id, Status.ACTIVE)
        assert [d.id for d in store.list(Status.ACTIVE)] == [a.id]
        assert len(store.list()) == 2


# ---------------------------------------------------------------------------
# Status transitions
# ---------------------------------------------------------------------------


class TestStatusTransitions:
    def test_activate_sets_current_task(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        updated = store.update_fleet_status(deployed.id, Status.ACTIVE, current_task="implement")
        assert updated.status == Status.ACTIVE
        assert updated.current_task == "implement"
        assert updated.current_agent == "coder"
        assert updated.get_task("implement").status == Status.ACTIVE

    def test_terminal_status_sets_completed_at(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        store.update_fleet_status(deployed.id, Status.ACTIVE)
        updated = store.update_fleet_status(deployed.id, Status.FAILED)
        assert updated.completed_at

    def test_complete_closes_running_tasks(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        store.update_fleet_status(deployed.id, Status.ACTIVE, current_task="analyze")
        store.update_task_process(deployed.id, "analyze", 12345)
        updated = store.update_fleet_status(deployed.id, Status.COMPLETE)
        task = updated.get_task("analyze")
        assert task.status == Status.COMPLETE
        assert task.pid is None

    def test_invalid_transition_raises_conflict(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        store.update_fleet_status(deployed.id, Status.ACTIVE)
        store.update_fleet_status(deployed.id, Status.CANCELLED)
        with pytest.raises(StateConflictError):
            store.update_fleet_status(deployed.id, Status.COMPLETE)
        assert store.get(deployed.id).status == Status.CANCELLED

    def test_complete_never_reopens(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        store.update_fleet_status(deployed.id, Status.ACTIVE, current_task="analyze")
        done = store.update_fleet_status(deployed.id, Status.COMPLETE)
        with pytest.raises(StateConflictError):
            store.update_fleet_status(deployed.id, Status.ACTIVE, current_task="implement")
        after = store.get(deployed.id)
        assert after.status == Status.COMPLETE
        assert after.completed_at == done.completed_at
        assert after.current_task == "analyze"
        assert after.get_task("implement").status == Status.PENDING

    def test_reopen_from_terminal_clears_completed_at(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        store.update_fleet_status(deployed.id, Status.FAILED)
        reopened = store.update_fleet_status(deployed.id, Status.ACTIVE)
        assert reopened.status == Status.ACTIVE
        assert reopened.completed_at == ""

    def test_unknown_current_task_raises(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        with pytest.raises(NotFoundError):
            store.update_fleet_status(deployed.id, Status.ACTIVE, current_task="ghost")
        assert store.get(deployed.id).status == Status.PENDING

    def test_task_status_timestamps(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        active = store.update_task_status(deployed.id, "analyze", Status.ACTIVE).get_task("analyze")
        assert active.started_at and active.deployed_at
        done = store.update_task_status(deployed.id, "analyze", Status.FAILED, exit_code=3)
        task = done.get_task("analyze")
        assert task.completed_at
        assert task.exit_code == 3
        reset = store.update_task_status(deployed.id, "analyze", Status.PENDING).get_task("analyze")
        assert reset.started_at is None
        assert reset.completed_at == ""
        assert reset.exit_code is None

    def test_no_cross_contamination(self, tmp_path):
        store = _make_store(tmp_path)
        a = store.create("code-change", "a")
        b = store.create("code-change", "b")
        before = store.get(b.id).to_json_dict()

        store.update_fleet_status(a.id, Status.ACTIVE, current_task="analyze")
        store.update_task_status(a.id, "analyze", Status.COMPLETE, exit_code=0)
        store.update_fleet_status(a.id, Status.COMPLETE)

        assert store.get(b.id).to_json_dict() == before
        assert store.get(a.id).get_task("implement").status == Status.PENDING


# ---------------------------------------------------------------------------
# Removal and outputs
# ---------------------------------------------------------------------------


class TestRemoval:
    def test_remove_deletes_directory(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        store.remove(deployed.id)
        assert not store.deployment_dir(deployed.id).exists()
        assert store.find(deployed.id) is None

    def test_remove_keep_outputs(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        store.save_task_output(deployed.id, "analyze", "findings")
        store.remove(deployed.id, keep_outputs=True)
        folder = store.deployment_dir(deployed.id)
        assert (folder / "outputs" / "analyze.md").read_text() == "findings"
        assert not (folder / "request.md").exists()

    def test_clean_completed_only_removes_complete(self, tmp_path):
        store = _make_store(tmp_path)
        done = store.create("code-change", "a")
        failed = store.create("code-change", "b")
        store.update_fleet_status(done.id, Status.COMPLETE)
        store.update_fleet_status(failed.id, Status.FAILED)
        assert store.clean_completed() == [done.id]
        assert [d.id for d in store.list()] == [failed.id]

    def test_task_output_round_trip(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        store.save_task_output(deployed.id, "analyze", "result", {"taskId": "analyze", "exitCode": 0})
        assert store.load_task_output(deployed.id, "analyze") == "result"
        bundle = json.loads((store.deployment_dir(deployed.id) / "outputs" / "analyze.json").read_text())
        assert bundle["exitCode"] == 0

    def test_missing_task_output_raises(self, tmp_path):
        store = _make_store(tmp_path)
        deployed = store.create("code-change", "a")
        with pytest.raises(NotFoundError):
            store.load_task_output(deployed.id, "implement")


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------


class TestLocking:
    def test_lock_times_out_when_held(self, tmp_path):
        path = tmp_path / "registry.lock"
        with RegistryLock(path, timeout=5):
            with pytest.raises(RegistryError):
                with RegistryLock(path, timeout=0.1, retry_delay=0.01):
                    pass

    def test_lock_released_after_exit(self, tmp_path):
        path = tmp_path / "registry.lock"
        with RegistryLock(path, timeout=1):
            pass
        with RegistryLock(path, timeout=0.1):
            pass

    def test_failed_transaction_does_not_save(self, tmp_path):
        store = _make_store(tmp_path)
        store.create("code-change", "a")
        with pytest.raises(RuntimeError):
            with store.transaction() as registry:
                registry.deployed_fleets.clear()
                raise RuntimeError("boom")
        assert len(store.list()) == 1

    def test_concurrent_creates_get_distinct_ids(self, tmp_path):
        store = _make_store(tmp_path)
        ids: list[str] = []
        lock = threading.Lock()

        def worker():
            deployed = RegistryStore(store.carrier_path).create("code-change", "parallel")
            with lock:
                ids.append(deployed.id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(ids, key=int) == [str(i) for i in range(1, 9)]
        assert len(store.list()) == 8

    def test_write_json_atomic_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "data.json"
        write_json_atomic(target, {"a": 1})
        write_json_atomic(target, {"a": 2})
        assert json.loads(target.read_text()) == {"a": 2}
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]
