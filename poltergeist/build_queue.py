"""A prioritised build queue that runs builds on worker threads."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterable
from typing import Any

from .config import BuildRequest, BuildSchedulingConfig
from .targets import Target

DEFAULT_PRIORITY = 50.0
POLL_INTERVAL = 0.1


class IntelligentBuildQueue:
    """Holds build requests ordered by priority and runs them in parallel.

    ``priority_engine`` needs ``calculate_priority`` and
    ``update_target_metrics``; ``notifier`` needs ``notify_build_start``,
    ``notify_build_success``, ``notify_build_failure`` and
    ``notify_queue_status``. Both are optional.
    """

    def __init__(
        self,
        config: BuildSchedulingConfig | None = None,
        logger: logging.Logger | None = None,
        priority_engine: Any = None,
        notifier: Any = None,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.config = config or BuildSchedulingConfig()
        self._logger = logger or logging.getLogger(__name__)
        self.priority_engine = priority_engine
        self.notifier = notifier
        self._poll_interval = poll_interval

        self._queue: list[BuildRequest] = []
        self._targets: dict[str, Target] = {}
        self._builders: dict[str, Any] = {}
        self._active: dict[str, BuildRequest] = {}

        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._processor: threading.Thread | None = None

    def register_target(self, target: Target, builder: Any) -> None:
        """Make ``builder`` the one used for ``target``."""
        with self._lock:
            self._targets[target.name] = target
            self._builders[target.name] = builder

    def on_file_changed(self, files: Iterable[str], targets: Iterable[Target]) -> None:
        """Queue builds for targets not already queued or building."""
        files = list(files)
        with self._lock:
            for target in targets:
                if self._is_target_pending(target.name):
                    continue
                priority = DEFAULT_PRIORITY
                if self.priority_engine is not None:
                    priority = float(self.priority_engine.calculate_priority(target, files))
                self._queue.append(
                    BuildRequest(
                        target=target,
                        priority=priority,
                        timestamp=time.time(),
                        triggering_files=list(files),
                    )
                )
                self._logger.debug(
                    "Queued build request for %s with priority %s", target.name, priority
                )
            self._sort_queue()
            active, queued = len(self._active), len(self._queue)
        if self.notifier is not None:
            self.notifier.notify_queue_status(active, queued)

    def start(self) -> None:
        """Start processing queued requests in the background."""
        with self._lock:
            if self._processor is not None and self._processor.is_alive():
                return
            self._stop = threading.Event()
            self._processor = threading.Thread(
                target=self._process_queue,
                args=(self._stop,),
                name="poltergeist-build-queue",
                daemon=True,
            )
            self._processor.start()

    def stop(self) -> None:
        """Stop processing and wait for running builds to finish."""
        self._stop.set()
        with self._lock:
            threads = list(self._threads)
            processor = self._processor
            self._processor = None
        if processor is not None and processor is not threading.current_thread():
            processor.join()
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join()
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive()]

    def enqueue(self, request: BuildRequest) -> None:
        """Add a request, keeping the queue ordered by priority."""
        with self._lock:
            self._queue.append(request)
            self._sort_queue()

    def dequeue(self) -> BuildRequest | None:
        """Remove and return the highest-priority request, or ``None``."""
        with self._lock:
            return self._queue.pop(0) if self._queue else None

    def peek(self) -> BuildRequest | None:
        """Return the highest-priority request without removing it."""
        with self._lock:
            return self._queue[0] if self._queue else None

    def clear(self) -> None:
        """Drop every queued request."""
        with self._lock:
            self._queue.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def _process_queue(self, stop: threading.Event) -> None:
        while not stop.wait(self._poll_interval):
            self._process_next_build()

    def _process_next_build(self) -> None:
        with self._lock:
            if len(self._active) >= self.config.parallelization or not self._queue:
                return
            request = self._queue.pop(0)
            name = request.target.name
            self._active[name] = request
            builder = self._builders.get(name)
            thread = threading.Thread(
                target=self._execute_build, args=(request, builder), daemon=True
            )
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()

    def _execute_build(self, request: BuildRequest, builder: Any) -> None:
        name = request.target.name
        start = time.monotonic()
        if self.notifier is not None:
            self.notifier.notify_build_start(name)

        error: Exception | None = None
        try:
            if builder is None:
                raise LookupError(f"no builder registered for target: {name}")
            builder.build(request.triggering_files)
        except Exception as exc:  # noqa: BLE001 - a failed build is reported, not raised
            error = exc
        duration = time.monotonic() - start

        if self.priority_engine is not None:
            self.priority_engine.update_target_metrics(name, duration, error is None)

        if self.notifier is not None:
            if error is not None:
                self.notifier.notify_build_failure(name, error)
            else:
                self.notifier.notify_build_success(name, duration)

        with self._lock:
            self._active.pop(name, None)
            active, queued = len(self._active), len(self._queue)

        if self.notifier is not None:
            self.notifier.notify_queue_status(active, queued)

    def _is_target_pending(self, name: str) -> bool:
        if name in self._active:
            return True
        return any(req.target.name == name for req in self._queue)

    def _sort_queue(self) -> None:
        self._queue.sort(key=lambda req: req.priority, reverse=True)