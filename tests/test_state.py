import json
import os
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from poltergeist.state import PoltergeistState, StateManager, StateNotFoundError
from poltergeist.targets import BuildStatus, ExecutableTarget


def _target(name="test"):
    return ExecutableTarget(name=name, build_command="build", watch_paths=["*"])


def _state_file(tmp_path, name="test"):
    return tmp_path / ".poltergeist" / "state" / f"{name}.json"


def test_initialize_state(tmp_path):
    sm = StateManager(tmp_path)
    s = sm.initialize_state(_target())
    assert s.target_name == "test"
    assert s.build_status is BuildStatus.IDLE
    assert s.process_id == os.getpid()
    assert _state_file(tmp_path).exists()


def test_initialize_preserves_statistics(tmp_path):
    sm = StateManager(tmp_path)
    sm.initialize_state(_target())
    sm.update_build_status("test", BuildStatus.SUCCEEDED)
    fresh = StateManager(tmp_path)
    s = fresh.initialize_state(_target())
    assert s.build_count == 1
    assert s.build_status is BuildStatus.IDLE


def test_read_state(tmp_path):
    sm = StateManager(tmp_path)
    sm.initialize_state(_target())
    assert sm.read_state("test").target_name == "test"
    with pytest.raises(StateNotFoundError):
        sm.read_state("nonexistent")


def test_update_state(tmp_path):
    sm = StateManager(tmp_path)
    sm.initialize_state(_target())
    sm.update_state(
        "test",
        {
            "buildStatus": BuildStatus.BUILDING,
            "lastBuildTime": datetime.now(timezone.utc),
            "buildCount": 5,
            "lastError": "test error",
            "customField": "custom value",
        },
    )
    s = sm.read_state("test")
    assert s.build_status is BuildStatus.BUILDING
    assert s.build_count == 5
    assert s.last_error == "test error"
    assert s.metadata["customField"] == "custom value"

    on_disk = StateManager(tmp_path).read_state("test")
    assert on_disk.build_count == 5
    assert on_disk.metadata["customField"] == "custom value"


def test_update_state_unknown_target(tmp_path):
    sm = StateManager(tmp_path)
    with pytest.raises(StateNotFoundError):
        sm.update_state("missing", {"buildCount": 1})


def test_update_build_status(tmp_path):
    sm = StateManager(tmp_path)
    sm.initialize_state(_target())
    sm.update_build_status("test", BuildStatus.SUCCEEDED)
    s = sm.read_state("test")
    assert s.build_status is BuildStatus.SUCCEEDED
    assert s.build_count == 1
    assert s.last_build_time is not None

    sm.update_build_status("test", BuildStatus.FAILED)
    s = sm.read_state("test")
    assert s.failure_count == 1


def test_remove_state(tmp_path):
    sm = StateManager(tmp_path)
    sm.initialize_state(_target())
    sm.remove_state("test")
    with pytest.raises(StateNotFoundError):
        sm.read_state("test")
    assert not _state_file(tmp_path).exists()


def test_is_locked(tmp_path):
    sm = StateManager(tmp_path)
    sm.initialize_state(_target())
    assert sm.is_locked("test") is False

    old = PoltergeistState(
        target_name="test",
        process_id=99999,
        heartbeat=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    _state_file(tmp_path).write_text(json.dumps(old.to_dict()))
    assert sm.is_locked("test") is False


def test_is_locked_by_live_other_process(tmp_path):
    sm = StateManager(tmp_path)
    other = PoltergeistState(
        target_name="test",
        process_id=os.getppid(),
        heartbeat=datetime.now(timezone.utc),
    )
    _state_file(tmp_path).write_text(json.dumps(other.to_dict()))
    assert sm.is_locked("test") is True


def test_is_locked_missing_state(tmp_path):
    assert StateManager(tmp_path).is_locked("nothing") is False


def test_discover_states(tmp_path):
    sm = StateManager(tmp_path)
    names = ["target1", "target2", "target3"]
    for name in names:
        sm.initialize_state(_target(name))
    states = StateManager(tmp_path).discover_states()
    assert sorted(states) == names


def test_discover_skips_broken_files(tmp_path):
    sm = StateManager(tmp_path)
    sm.initialize_state(_target("good"))
    _state_file(tmp_path, "bad").write_text("{not json")
    assert list(sm.discover_states()) == ["good"]


def test_heartbeat(tmp_path):
    sm = StateManager(tmp_path)
    initial = sm.initialize_state(_target()).heartbeat
    sm.start_heartbeat(0.05)
    try:
        time.sleep(0.4)
    finally:
        sm.stop_heartbeat()
    assert sm.read_state("test").heartbeat > initial
    assert StateManager(tmp_path).read_state("test").heartbeat > initial


def test_cleanup(tmp_path):
    sm = StateManager(tmp_path)
    for name in ["target1", "target2"]:
        sm.initialize_state(_target(name))
        sm.update_build_status(name, BuildStatus.BUILDING)
    sm.cleanup()
    for name in ["target1", "target2"]:
        s = sm.read_state(name)
        assert s.build_status is BuildStatus.IDLE
        assert s.process_id == 0
        on_disk = StateManager(tmp_path).read_state(name)
        assert on_disk.process_id == 0


def test_concurrent_updates(tmp_path):
    sm = StateManager(tmp_path)
    sm.initialize_state(_target())

    def worker(idx):
        for j in range(10):
            sm.update_state("test", {"buildCount": idx * 10 + j})

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    s = sm.read_state("test")
    assert s.target_name == "test"
    assert 0 <= s.build_count < 100


def test_atomic_writes(tmp_path):
    sm = StateManager(tmp_path)
    sm.initialize_state(_target())
    errors = []

    def worker(idx):
        status = BuildStatus.SUCCEEDED if idx % 2 == 0 else BuildStatus.BUILDING
        try:
            sm.update_build_status("test", status)
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(100)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert sm.read_state("test").build_count == 50
    parsed = json.loads(_state_file(tmp_path).read_text())
    assert parsed["targetName"] == "test"


def test_state_round_trip():
    state = PoltergeistState(
        target_name="app",
        build_status=BuildStatus.FAILED,
        last_build_time=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        build_count=3,
        failure_count=2,
        process_id=1234,
        heartbeat=datetime(2024, 5, 1, 12, 0, 5, tzinfo=timezone.utc),
        last_error="boom",
        build_duration=1.5,
        changed_files=["a.go"],
        metadata={"k": "v"},
    )
    assert PoltergeistState.from_dict(state.to_dict()) == state


def test_from_dict_accepts_nanosecond_timestamps():
    state = PoltergeistState.from_dict(
        {
            "targetName": "x",
            "heartbeat": "2024-05-01T12:00:00.123456789Z",
            "lastBuildTime": "0001-01-01T00:00:00Z",
        }
    )
    assert state.heartbeat == datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
    assert state.last_build_time is None
    assert state.build_status is BuildStatus.IDLE


def test_to_dict_omits_empty_optionals():
    data = PoltergeistState(target_name="x").to_dict()
    for key in ("lastError", "buildDuration", "changedFiles", "metadata"):
        assert key not in data
    assert data["targetName"] == "x"


def test_read_state_invalid_json(tmp_path):
    sm = StateManager(tmp_path)
    _state_file(tmp_path, "broken").write_text("not json")
    with pytest.raises(ValueError):
        sm.read_state("broken")