"""A group of worker threads that turns exceptions into a single error."""

from __future__ import annotations

import logging
import threading
import traceback
from collections.abc import Callable
from typing import Any


class PanicError(RuntimeError):
    """An exception raised inside a group worker."""

    def __init__(self, value: BaseException) -> None:
        super().__init__(f"goroutine panic: {value}")
        self.value = value


class SafeGroup:
    """Runs functions concurrently; the first failure is kept and cancels the group.

    ``cancelled`` is set once any function fails or :meth:`wait` returns, so
    running functions can check it and stop early.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self.cancelled = threading.Event()
        self._lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._error: PanicError | None = None
        self._slots: threading.Semaphore | None = None

    def set_limit(self, n: int) -> None:
        """Allow at most ``n`` functions at once; a negative ``n`` removes the limit."""
        if n == 0:
            raise ValueError("limit must be positive, or negative for no limit")
        self._slots = threading.BoundedSemaphore(n) if n > 0 else None

    def go(self, fn: Callable[[], Any]) -> None:
        """Run ``fn`` in a new thread, blocking while the limit is reached."""
        slots = self._slots
        if slots is not None:
            slots.acquire()
        thread = threading.Thread(target=self._run, args=(fn, slots), daemon=True)
        with self._lock:
            self._threads.append(thread)
        thread.start()

    def wait(self) -> None:
        """Wait for every function; raise the first failure if there was one."""
        while True:
            with self._lock:
                pending = [t for t in self._threads if t.is_alive()]
            if not pending:
                break
            for thread in pending:
                thread.join()
        self.cancelled.set()
        if self._error is not None:
            raise self._error

    def _run(self, fn: Callable[[], Any], slots: threading.Semaphore | None) -> None:
        try:
            fn()
        except BaseException as exc:  # noqa: BLE001 - every failure is reported
            self._logger.error(
                "Goroutine panic recovered: %s\n%s", exc, traceback.format_exc()
            )
            error = PanicError(exc)
            error.__cause__ = exc
            with self._lock:
                if self._error is None:
                    self._error = error
            self.cancelled.set()
        finally:
            if slots is not None:
                slots.release()