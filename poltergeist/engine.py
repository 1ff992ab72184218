"""The build orchestration engine: watches files and rebuilds targets."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import BuildPrioritization, BuildSchedulingConfig, PoltergeistConfig
from .safegroup import SafeGroup
from .targets import BuildStatus, Target, TargetParseError, parse_target

DEFAULT_PARALLELISM = 2
DEFAULT_SETTLING_DELAY_MS = 1000
DEFAULT_STOP_TIMEOUT = 30.0
SUBSCRIPTION_FIELDS = ("name", "exists", "type")


class EngineError(RuntimeError):
    """Raised when the engine cannot start or a build step fails."""


@dataclass
class FileChange:
    """A file reported as changed by the watcher."""

    name: str
    exists: bool = True
    type: str = "f"


@dataclass
class SubscriptionConfig:
    """What a watcher subscription matches and which fields it reports."""

    expression: list[Any]
    fields: list[str] = field(default_factory=lambda: list(SUBSCRIPTION_FIELDS))


@dataclass
class PoltergeistDependencies:
    """Collaborators the engine works with; the first four are required."""

    state_manager: Any = None
    builder_factory: Any = None
    watchman_client: Any = None
    watchman_config_manager: Any = None
    process_manager: Any = None
    notifier: Any = None
    build_queue: Any = None
    priority_engine: Any = None


@dataclass
class TargetState:
    """Runtime state of one watched target."""

    target: Target
    builder: Any
    watching: bool = False
    last_build: BuildStatus | None = None
    pending_files: set[str] = field(default_factory=set)
    build_timer: threading.Timer | None = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass
class ConfigChanges:
    """Differences between two configurations."""

    targets_added: list[Target] = field(default_factory=list)
    targets_removed: list[str] = field(default_factory=list)
    targets_modified: list[tuple[str, Target, Target]] = field(default_factory=list)
    watchman_changed: bool = False
    notifications_changed: bool = False
    build_scheduling_changed: bool = False


def _is_enabled(target: Target) -> bool:
    enabled = getattr(target, "enabled", True)
    return True if enabled is None else bool(enabled)


def _settling_delay(target: Target) -> float:
    """Settling delay of a target in seconds."""
    delay = getattr(target, "settling_delay", None)
    if delay is None:
        delay = DEFAULT_SETTLING_DELAY_MS
    return max(float(delay), 0.0) / 1000.0


class Poltergeist:
    """Watches a project's files and builds the affected targets."""

    def __init__(
        self,
        config: PoltergeistConfig,
        project_root: str | os.PathLike[str],
        logger: logging.Logger | None = None,
        deps: PoltergeistDependencies | None = None,
        config_path: str = "",
    ) -> None:
        deps = deps or PoltergeistDependencies()
        required = {
            "StateManager": deps.state_manager,
            "BuilderFactory": deps.builder_factory,
            "WatchmanClient": deps.watchman_client,
            "WatchmanConfigManager": deps.watchman_config_manager,
        }
        for name, value in required.items():
            if value is None:
                raise ValueError(f"{name} dependency is required")

        self.config = config
        self.project_root = os.path.abspath(os.fspath(project_root))
        self.config_path = config_path
        self.logger = logger or logging.getLogger("poltergeist.engine")

        self._state_manager = deps.state_manager
        self._builder_factory = deps.builder_factory
        self._watchman = deps.watchman_client
        self._watchman_config = deps.watchman_config_manager
        self._process_manager = deps.process_manager
        self._notifier = deps.notifier
        self._build_queue = deps.build_queue
        self._priority_engine = deps.priority_engine

        self.scheduling = config.build_scheduling or BuildSchedulingConfig(
            parallelization=DEFAULT_PARALLELISM,
            prioritization=BuildPrioritization(enabled=True),
        )

        self.target_states: dict[str, TargetState] = {}
        self._running = False
        self._stop_event = threading.Event()
        self._lock = threading.RLock()

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def start(self, target_name: str = "") -> None:
        """Start watching and building; an empty name means every enabled target."""
        with self._lock:
            if self._running:
                raise EngineError("Poltergeist is already running")
            self._running = True
            self._stop_event = threading.Event()
        try:
            self._start(target_name)
        except BaseException:
            with self._lock:
                self._running = False
            self._stop_event.set()
            raise

    def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT) -> None:
        """Stop watching, waiting at most ``timeout`` seconds for shutdown."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            states = list(self.target_states.values())

        self.logger.info("Stopping Poltergeist...")
        self._stop_event.set()

        for state in states:
            with state.lock:
                if state.build_timer is not None:
                    state.build_timer.cancel()
                    state.build_timer = None

        shutdown = threading.Thread(target=self._shutdown, daemon=True)
        shutdown.start()
        shutdown.join(timeout)
        if shutdown.is_alive():
            self.logger.warning("Poltergeist shutdown timed out")
        else:
            self.logger.info("Poltergeist stopped gracefully")

    def cleanup(self) -> None:
        """Release state held by this engine."""
        self._state_manager.cleanup()

    def _shutdown(self) -> None:
        if self._build_queue is not None:
            self._build_queue.stop()
        self._state_manager.stop_heartbeat()
        if self._watchman is not None and self._watchman.is_connected():
            try:
                self._watchman.disconnect()
            except Exception as exc:  # noqa: BLE001 - shutdown continues regardless
                self.logger.warning("Failed to disconnect from watchman: %s", exc)

    def _start(self, target_name: str) -> None:
        self.logger.info("Starting Poltergeist...")
        self._state_manager.start_heartbeat()

        try:
            self._setup_watchman_config()
        except Exception as exc:
            raise EngineError(f"failed to setup watchman config: {exc}") from exc

        if self._build_queue is not None:
            self._build_queue.start()

        targets = self._targets_to_watch(target_name)
        if not targets:
            raise EngineError("no targets to watch")

        self.logger.info("Building %d enabled target(s)", len(targets))

        for target in targets:
            builder = self._builder_factory.create_builder(
                target, self.project_root, self.logger, self._state_manager
            )
            try:
                builder.validate()
            except Exception as exc:
                raise EngineError(
                    f"target validation failed for {target.name}: {exc}"
                ) from exc

            with self._lock:
                self.target_states[target.name] = TargetState(target=target, builder=builder)

            if self._build_queue is not None:
                self._build_queue.register_target(target, builder)

            try:
                self._state_manager.initialize_state(target)
            except Exception as exc:  # noqa: BLE001 - a missing state file is not fatal
                self.logger.warning("Failed to initialize state for %s: %s", target.name, exc)

        try:
            self._watchman.connect()
        except Exception as exc:
            raise EngineError(f"failed to connect to watchman: {exc}") from exc

        try:
            self._watchman.watch_project(self.project_root)
        except Exception as exc:
            raise EngineError(f"failed to watch project: {exc}") from exc

        try:
            self._subscribe_to_changes()
        except EngineError as exc:
            raise EngineError(f"failed to subscribe to changes: {exc}") from exc

        try:
            self._perform_initial_builds()
        except EngineError as exc:
            self.logger.warning("Initial builds encountered errors: %s", exc)

        self.logger.info("Poltergeist is now watching for changes...")

        if self._process_manager is not None:
            self._process_manager.register_shutdown_handler(self._on_shutdown)
            self._process_manager.start(self._stop_event)

    def _on_shutdown(self) -> None:
        self.stop()
        try:
            self.cleanup()
        except Exception as exc:  # noqa: BLE001 - best effort on shutdown
            self.logger.warning("Cleanup failed: %s", exc)

    def _targets_to_watch(self, target_name: str) -> list[Target]:
        targets: list[Target] = []
        for raw in self.config.targets:
            try:
                target = parse_target(raw)
            except (TargetParseError, ValueError) as exc:
                self.logger.warning("Failed to parse target: %s", exc)
                continue
            if target_name:
                if target.name == target_name:
                    if _is_enabled(target):
                        targets.append(target)
                    break
            elif _is_enabled(target):
                targets.append(target)
        return targets

    def _setup_watchman_config(self) -> None:
        self.logger.info("Setting up Watchman configuration...")
        self._watchman_config.ensure_config_up_to_date(self.config)
        try:
            suggestions = self._watchman_config.suggest_optimizations()
        except Exception:  # noqa: BLE001 - suggestions are optional
            suggestions = None
        if suggestions:
            self.logger.info("Optimization suggestions:")
            for suggestion in suggestions:
                self.logger.info("  • %s", suggestion)

    def _subscribe_to_changes(self) -> None:
        path_to_targets: dict[str, list[str]] = {}
        with self._lock:
            for name, state in self.target_states.items():
                for pattern in state.target.watch_paths:
                    path_to_targets.setdefault(pattern, []).append(name)

        exclusions = self._watchman_config.create_exclusion_expressions(self.config)

        for pattern, names in path_to_targets.items():
            normalized = self._watchman_config.normalize_watch_pattern(pattern)
            try:
                self._watchman_config.validate_watch_pattern(normalized)
            except Exception as exc:
                raise EngineError(f"invalid watch pattern {pattern}: {exc}") from exc

            try:
                self._watchman.subscribe(
                    self.project_root,
                    f"poltergeist_{normalized}",
                    SubscriptionConfig(expression=["match", normalized, "wholename"]),
                    self._make_change_handler(names),
                    exclusions,
                )
            except Exception as exc:
                raise EngineError(f"failed to subscribe to {pattern}: {exc}") from exc

            self.logger.info("Watching %d target(s): %s", len(names), normalized)

        if self.config_path:
            config_name = os.path.basename(self.config_path)
            try:
                self._watchman.subscribe(
                    self.project_root,
                    "poltergeist_config",
                    SubscriptionConfig(expression=["match", config_name, "wholename"]),
                    self._handle_config_change,
                    None,
                )
            except Exception as exc:  # noqa: BLE001 - config watching is optional
                self.logger.warning("Failed to watch config file: %s", exc)
            else:
                self.logger.info("Watching configuration file for changes")

    def _make_change_handler(self, names: list[str]) -> Callable[[list[FileChange]], None]:
        target_names = list(names)

        def handler(files: list[FileChange]) -> None:
            self._handle_file_changes(files, target_names)

        return handler

    def _prioritized(self) -> bool:
        return self._build_queue is not None and self.scheduling.prioritization.enabled

    def _handle_file_changes(self, files: list[FileChange], target_names: list[str]) -> None:
        changed = [f.name for f in files if f.exists]
        if not changed:
            return

        self.logger.debug("Files changed: %s", changed)

        if self._prioritized():
            with self._lock:
                targets = [
                    self.target_states[n].target for n in target_names if n in self.target_states
                ]
            self._build_queue.on_file_changed(changed, targets)
            return

        for name in target_names:
            with self._lock:
                state = self.target_states.get(name)
            if state is None:
                continue
            with state.lock:
                state.pending_files.update(changed)
                if state.build_timer is not None:
                    state.build_timer.cancel()
                timer = threading.Timer(
                    _settling_delay(state.target), self._timed_build, args=(name,)
                )
                timer.daemon = True
                state.build_timer = timer
                timer.start()

    def _timed_build(self, name: str) -> None:
        if self._stop_event.is_set():
            return
        try:
            self._build_target(name)
        except Exception as exc:  # noqa: BLE001 - failures are reported by _build_target
            self.logger.debug("Build of %s failed: %s", name, exc)

    def _handle_config_change(self, files: list[FileChange]) -> None:
        if not files:
            return
        self.logger.info("Configuration file changed, reloading...")

    def _perform_initial_builds(self) -> None:
        with self._lock:
            names = list(self.target_states)
            targets = [s.target for s in self.target_states.values()]

        if self._prioritized():
            self._build_queue.on_file_changed(["initial build"], targets)
            return

        group = SafeGroup(self.logger)
        limit = self.scheduling.parallelization
        group.set_limit(limit if limit > 0 else DEFAULT_PARALLELISM)

        for name in names:

            def work(name: str = name) -> None:
                if group.cancelled.is_set() or self._stop_event.is_set():
                    raise EngineError("cancelled")
                try:
                    self._build_target(name)
                except Exception as exc:
                    raise EngineError(f"{name}: {exc}") from exc

            group.go(work)

        try:
            group.wait()
        except Exception as exc:
            raise EngineError(f"initial builds failed: {exc}") from exc

    def _build_target(self, name: str) -> None:
        with self._lock:
            state = self.target_states.get(name)
        if state is None:
            raise EngineError(f"target not found: {name}")

        with state.lock:
            changed = list(state.pending_files)
            state.pending_files = set()

        try:
            self._state_manager.update_build_status(name, BuildStatus.BUILDING)
        except Exception as exc:  # noqa: BLE001 - status updates are best effort
            self.logger.warning("Failed to update build status: %s", exc)

        if self._notifier is not None:
            self._notifier.notify_build_start(name)

        start = time.monotonic()
        try:
            state.builder.build(changed)
        except Exception as exc:
            state.last_build = BuildStatus.FAILED
            try:
                self._state_manager.update_build_status(name, BuildStatus.FAILED)
            except Exception:  # noqa: BLE001
                pass
            if self._notifier is not None:
                self._notifier.notify_build_failure(name, exc)
            raise
        duration = time.monotonic() - start

        state.last_build = BuildStatus.SUCCEEDED
        try:
            self._state_manager.update_build_status(name, BuildStatus.SUCCEEDED)
        except Exception:  # noqa: BLE001
            pass
        if self._notifier is not None:
            self._notifier.notify_build_success(name, duration)
        if self._priority_engine is not None:
            self._priority_engine.update_target_metrics(name, duration, True)