"""Process lifecycle: shutdown handlers, signals, heartbeats and process control."""

from __future__ import annotations

import logging
import os
import signal
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

HEARTBEAT_INTERVAL = 10.0
KILL_GRACE_PERIOD = 2.0
_POLL = 0.05
_SIGNALS = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGTERM", "SIGHUP")
    if hasattr(signal, name)
)


class ProcessManager:
    """Runs shutdown handlers on a stop request or a termination signal."""

    def __init__(
        self,
        logger: logging.Logger | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._heartbeat_interval = heartbeat_interval
        self._handlers: list[Callable[[], None]] = []
        self._heartbeat_fn: Callable[[], None] | None = None
        self._lock = threading.Lock()
        self._running = False
        self._halt = threading.Event()
        self._wake = threading.Event()
        self._received: int | None = None
        self._threads: list[threading.Thread] = []
        self._previous_handlers: dict[int, object] = {}

    def register_shutdown_handler(self, handler: Callable[[], None]) -> None:
        """Add a handler; handlers run in reverse order of registration."""
        with self._lock:
            self._handlers.append(handler)

    def start(self, stop_event: threading.Event | None = None) -> None:
        """Begin watching ``stop_event`` and termination signals."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._halt = threading.Event()
            self._wake = threading.Event()
            self._received = None
            halt, wake = self._halt, self._wake
            heartbeat = self._heartbeat_fn is not None

        self._install_signal_handlers()

        watcher = threading.Thread(
            target=self._watch, args=(stop_event, halt, wake), daemon=True
        )
        threads = [watcher]
        if heartbeat:
            threads.append(
                threading.Thread(
                    target=self._heartbeat_loop, args=(stop_event, halt), daemon=True
                )
            )
        with self._lock:
            self._threads = threads
        for thread in threads:
            thread.start()

    def stop(self) -> None:
        """Stop watching without running the shutdown handlers."""
        with self._lock:
            self._running = False
            halt, wake, threads = self._halt, self._wake, list(self._threads)
            self._threads = []
        halt.set()
        wake.set()
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join()
        self._restore_signal_handlers()

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def set_heartbeat(self, fn: Callable[[], None] | None) -> None:
        """Set the function called on every heartbeat tick."""
        with self._lock:
            self._heartbeat_fn = fn

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in _SIGNALS:
            try:
                self._previous_handlers[sig] = signal.signal(sig, self._on_signal)
            except (OSError, ValueError):
                continue

    def _restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        previous, self._previous_handlers = self._previous_handlers, {}
        for sig, handler in previous.items():
            try:
                signal.signal(sig, handler)
            except (OSError, ValueError, TypeError):
                continue

    def _on_signal(self, signum: int, frame: object) -> None:
        self._received = signum
        self._wake.set()

    def _watch(
        self,
        stop_event: threading.Event | None,
        halt: threading.Event,
        wake: threading.Event,
    ) -> None:
        while True:
            if self._received is not None:
                self._logger.info("Received signal %s", self._received)
                self._handle_shutdown()
                return
            if stop_event is not None and stop_event.is_set():
                self._handle_shutdown()
                return
            if halt.is_set():
                return
            wake.wait(_POLL)

    def _handle_shutdown(self) -> None:
        self._logger.info("Initiating graceful shutdown...")
        with self._lock:
            handlers = list(self._handlers)
            self._running = False
        for handler in reversed(handlers):
            handler()

    def _heartbeat_loop(
        self, stop_event: threading.Event | None, halt: threading.Event
    ) -> None:
        while not halt.wait(self._heartbeat_interval):
            if stop_event is not None and stop_event.is_set():
                return
            with self._lock:
                fn = self._heartbeat_fn
            if fn is not None:
                fn()


@dataclass
class ProcessInfo:
    """What is known about a process."""

    pid: int
    start_time: datetime
    is_running: bool
    command: str = ""


def _alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def get_process_info(pid: int) -> ProcessInfo:
    """Report whether ``pid`` is running; the start time is the time of the query."""
    return ProcessInfo(
        pid=pid, start_time=datetime.now(timezone.utc), is_running=_alive(pid)
    )


def kill_process(pid: int) -> None:
    """Terminate ``pid``, forcing it if it is still running after a grace period."""
    force = getattr(signal, "SIGKILL", signal.SIGTERM)
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        os.kill(pid, force)
        return

    time.sleep(KILL_GRACE_PERIOD)

    if _alive(pid):
        try:
            os.kill(pid, force)
        except ProcessLookupError:
            pass