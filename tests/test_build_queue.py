import threading
import time

import pytest

from poltergeist.build_queue import IntelligentBuildQueue
from poltergeist.config import BuildRequest, BuildSchedulingConfig
from poltergeist.priority import PriorityEngine
from poltergeist.targets import ExecutableTarget


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class FakeBuilder:
    def __init__(self, fail=False, gate=None, tracker=None):
        self.fail = fail
        self.gate = gate
        self.tracker = tracker
        self.calls = []

    def build(self, changed_files):
        if self.tracker is not None:
            self.tracker.enter()
        try:
            if self.gate is not None:
                self.gate.wait(5)
            self.calls.append(list(changed_files))
            if self.fail:
                raise RuntimeError("build failed")
        finally:
            if self.tracker is not None:
                self.tracker.leave()


class Tracker:
    def __init__(self):
        self.lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def enter(self):
        with self.lock:
            self.current += 1
            self.peak = max(self.peak, self.current)

    def leave(self):
        with self.lock:
            self.current -= 1


class FakeNotifier:
    def __init__(self):
        self.lock = threading.Lock()
        self.events = []

    def _add(self, event):
        with self.lock:
            self.events.append(event)

    def notify_build_start(self, name):
        self._add(("start", name))

    def notify_build_success(self, name, duration):
        self._add(("success", name))

    def notify_build_failure(self, name, error):
        self._add(("failure", name))

    def notify_queue_status(self, active, queued):
        self._add(("status", active, queued))


class FixedPriorities:
    def __init__(self, priorities):
        self.priorities = priorities
        self.metrics = []

    def calculate_priority(self, target, files):
        return self.priorities[target.name]

    def update_target_metrics(self, name, duration, success):
        self.metrics.append((name, success))


def _target(name):
    return ExecutableTarget(name=name, build_command="true", watch_paths=["*"])


def test_enqueue_orders_by_priority():
    queue = IntelligentBuildQueue(BuildSchedulingConfig())
    for name, priority in [("low", 10.0), ("high", 90.0), ("mid", 50.0)]:
        queue.enqueue(BuildRequest(target=_target(name), priority=priority))
    assert [queue.dequeue().target.name for _ in range(3)] == ["high", "mid", "low"]
    assert queue.dequeue() is None


def test_peek_does_not_remove():
    queue = IntelligentBuildQueue(BuildSchedulingConfig())
    queue.enqueue(BuildRequest(target=_target("a")))
    assert queue.peek().target.name == "a"
    assert len(queue) == 1


def test_peek_empty_returns_none():
    assert IntelligentBuildQueue(BuildSchedulingConfig()).peek() is None


def test_clear_empties_queue():
    queue = IntelligentBuildQueue(BuildSchedulingConfig())
    queue.enqueue(BuildRequest(target=_target("a")))
    queue.enqueue(BuildRequest(target=_target("b")))
    queue.clear()
    assert len(queue) == 0


def test_on_file_changed_uses_priority_engine_and_skips_duplicates():
    engine = FixedPriorities({"a": 20.0, "b": 80.0})
    notifier = FakeNotifier()
    queue = IntelligentBuildQueue(BuildSchedulingConfig(), None, engine, notifier)
    queue.on_file_changed(["x.go"], [_target("a"), _target("b")])
    queue.on_file_changed(["y.go"], [_target("a")])
    assert len(queue) == 2
    first = queue.dequeue()
    assert first.target.name == "b"
    assert first.priority == 80.0
    assert first.triggering_files == ["x.go"]
    assert notifier.events[-1] == ("status", 0, 2)


def test_on_file_changed_default_priority():
    queue = IntelligentBuildQueue(BuildSchedulingConfig())
    queue.on_file_changed(["x.go"], [_target("a")])
    assert queue.peek().priority == 50.0


def test_started_queue_builds_and_reports():
    builder = FakeBuilder()
    notifier = FakeNotifier()
    engine = PriorityEngine(BuildSchedulingConfig())
    queue = IntelligentBuildQueue(BuildSchedulingConfig(), None, engine, notifier, 0.01)
    target = _target("app")
    queue.register_target(target, builder)
    queue.start()
    try:
        queue.on_file_changed(["main.go"], [target])
        assert _wait_for(lambda: ("status", 0, 0) in notifier.events)
    finally:
        queue.stop()
    assert builder.calls == [["main.go"]]
    assert ("start", "app") in notifier.events
    assert ("success", "app") in notifier.events
    assert engine.get_target_priority("app").success_rate == 1.0


def test_failed_build_is_reported():
    notifier = FakeNotifier()
    engine = FixedPriorities({"app": 50.0})
    queue = IntelligentBuildQueue(BuildSchedulingConfig(), None, engine, notifier, 0.01)
    target = _target("app")
    builder = FakeBuilder(fail=True)
    queue.register_target(target, builder)
    queue.start()
    try:
        queue.on_file_changed(["main.go"], [target])
        assert _wait_for(lambda: ("failure", "app") in notifier.events)
        assert _wait_for(lambda: engine.metrics == [("app", False)])
    finally:
        queue.stop()
    assert len(queue) == 0
    assert builder.calls == [["main.go"]]
    assert ("success", "app") not in notifier.events


def test_parallelization_limit_respected():
    gate = threading.Event()
    tracker = Tracker()
    config = BuildSchedulingConfig(parallelization=1)
    queue = IntelligentBuildQueue(config, None, None, None, 0.01)
    builders = {}
    targets = []
    for name in ("a", "b", "c"):
        target = _target(name)
        builders[name] = FakeBuilder(gate=gate, tracker=tracker)
        queue.register_target(target, builders[name])
        targets.append(target)
    queue.start()
    try:
        queue.on_file_changed(["f"], targets)
        assert _wait_for(lambda: tracker.current == 1)
        time.sleep(0.1)
        assert tracker.current == 1
        gate.set()
        assert _wait_for(lambda: all(b.calls for b in builders.values()))
    finally:
        gate.set()
        queue.stop()
    assert tracker.peak == 1


def test_pending_target_not_requeued_while_building():
    gate = threading.Event()
    queue = IntelligentBuildQueue(BuildSchedulingConfig(), None, None, None, 0.01)
    target = _target("app")
    builder = FakeBuilder(gate=gate)
    queue.register_target(target, builder)
    queue.start()
    try:
        queue.on_file_changed(["a"], [target])
        assert _wait_for(lambda: len(queue) == 0)
        queue.on_file_changed(["b"], [target])
        assert len(queue) == 0
        gate.set()
        assert _wait_for(lambda: builder.calls == [["a"]])
    finally:
        gate.set()
        queue.stop()


@pytest.mark.parametrize("count", [1, 4])
def test_len_counts_requests(count):
    queue = IntelligentBuildQueue(BuildSchedulingConfig())
    for index in range(count):
        queue.enqueue(BuildRequest(target=_target(f"t{index}")))
    assert len(queue) == count