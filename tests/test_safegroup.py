import threading
import time

import pytest

from poltergeist.safegroup import PanicError, SafeGroup


def ok():
    return None


def failing():
    raise RuntimeError("operation failed")


def panic(message):
    def fn():
        raise ValueError(message)

    return fn


@pytest.mark.parametrize(
    "operations, expected",
    [
        ([ok, ok, ok], None),
        ([ok, failing, ok], "operation failed"),
        ([ok, panic("test panic"), ok], "goroutine panic"),
        ([panic("panic 1"), panic("panic 2"), ok], "goroutine panic"),
    ],
    ids=[
        "successful operations",
        "one operation returns error",
        "one operation panics",
        "multiple operations panic",
    ],
)
def test_safe_group_panic_recovery(operations, expected):
    group = SafeGroup()
    group.set_limit(2)
    for op in operations:
        group.go(op)

    if expected is None:
        assert group.wait() is None
    else:
        with pytest.raises(PanicError) as info:
            group.wait()
        assert expected in str(info.value)


def test_error_keeps_original_exception():
    group = SafeGroup()
    group.go(failing)
    with pytest.raises(PanicError) as info:
        group.wait()
    assert isinstance(info.value.value, RuntimeError)
    assert info.value.__cause__ is info.value.value


def test_all_functions_run():
    results = []
    lock = threading.Lock()
    group = SafeGroup()

    for i in range(5):
        def fn(i=i):
            with lock:
                results.append(i)

        group.go(fn)

    assert group.wait() is None
    assert sorted(results) == [0, 1, 2, 3, 4]


def test_limit_bounds_concurrency():
    active = 0
    peak = 0
    done = 0
    lock = threading.Lock()

    def work():
        nonlocal active, peak, done
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
            done += 1

    group = SafeGroup()
    group.set_limit(2)
    for _ in range(6):
        group.go(work)

    assert group.wait() is None
    assert done == 6
    assert peak <= 2


def test_failure_sets_cancelled():
    group = SafeGroup()
    group.go(failing)
    with pytest.raises(PanicError):
        group.wait()
    assert group.cancelled.is_set()


def test_zero_limit_rejected():
    with pytest.raises(ValueError):
        SafeGroup().set_limit(0)


def test_negative_limit_means_unbounded():
    started = threading.Barrier(3, timeout=5)
    group = SafeGroup()
    group.set_limit(-1)
    for _ in range(3):
        group.go(started.wait)
    assert group.wait() is None
    assert started.n_waiting == 0