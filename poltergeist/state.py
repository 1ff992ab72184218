"""Persistent per-target state files kept under ``.poltergeist/state``."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from .targets import BuildStatus, Target

HEARTBEAT_INTERVAL = 10.0
STALE_HEARTBEAT = timedelta(seconds=30)

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_TIME_RE = re.compile(
    r"^(?P<base>[^.]+?)(?:\.(?P<frac>\d+))?(?P<tz>Z|[+-]\d{2}:\d{2})?$"
)


class StateNotFoundError(LookupError):
    """Raised when no state exists for a target."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError(f"invalid timestamp: {value!r}")
    match = _TIME_RE.match(value)
    if not match:
        raise ValueError(f"invalid timestamp: {value!r}")
    text = match["base"]
    if match["frac"]:
        text += "." + match["frac"][:6].ljust(6, "0")
    tz = match["tz"]
    text += "+00:00" if tz in (None, "Z") else tz
    parsed = datetime.fromisoformat(text)
    return None if parsed == _ZERO_TIME else parsed


def _format_time(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class PoltergeistState:
    """Persistent state of one target; durations are in seconds."""

    target_name: str
    build_status: BuildStatus = BuildStatus.IDLE
    last_build_time: datetime | None = None
    build_count: int = 0
    failure_count: int = 0
    process_id: int = 0
    heartbeat: datetime | None = None
    last_error: str = ""
    build_duration: float = 0.0
    changed_files: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready mapping; empty optional fields are left out."""
        data: dict[str, Any] = {
            "targetName": self.target_name,
            "buildStatus": self.build_status.value,
            "lastBuildTime": _format_time(self.last_build_time),
            "buildCount": self.build_count,
            "failureCount": self.failure_count,
            "processId": self.process_id,
            "heartbeat": _format_time(self.heartbeat),
        }
        if self.last_error:
            data["lastError"] = self.last_error
        if self.build_duration:
            data["buildDuration"] = self.build_duration
        if self.changed_files:
            data["changedFiles"] = list(self.changed_files)
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PoltergeistState:
        """Build a state from a mapping produced by :meth:`to_dict`."""
        if not isinstance(data, dict):
            raise ValueError("state must be a JSON object")
        status = data.get("buildStatus") or BuildStatus.IDLE.value
        return cls(
            target_name=data.get("targetName", ""),
            build_status=BuildStatus(status),
            last_build_time=_parse_time(data.get("lastBuildTime")),
            build_count=int(data.get("buildCount", 0)),
            failure_count=int(data.get("failureCount", 0)),
            process_id=int(data.get("processId", 0)),
            heartbeat=_parse_time(data.get("heartbeat")),
            last_error=data.get("lastError") or "",
            build_duration=float(data.get("buildDuration") or 0.0),
            changed_files=list(data.get("changedFiles") or []),
            metadata=dict(data.get("metadata") or {}),
        )


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # Signal 0 is not a probe on Windows; trust the fresh heartbeat.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class StateManager:
    """Reads, writes and keeps alive the state files of a project's targets."""

    def __init__(self, project_root: str | os.PathLike[str], logger: logging.Logger | None = None):
        self.state_dir = Path(project_root) / ".poltergeist" / "state"
        self._logger = logger or logging.getLogger(__name__)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            self._logger.error("Failed to create state directory: %s", exc)
        self._lock = threading.RLock()
        self._states: dict[str, PoltergeistState] = {}
        self._heartbeat_stop: threading.Event | None = None
        self._heartbeat_thread: threading.Thread | None = None

    def initialize_state(self, target: Target) -> PoltergeistState:
        """Create fresh state for a target, keeping stored build statistics."""
        with self._lock:
            state = PoltergeistState(
                target_name=target.name,
                build_status=BuildStatus.IDLE,
                process_id=os.getpid(),
                heartbeat=_now(),
            )
            try:
                existing = self._load_state_file(target.name)
            except (StateNotFoundError, ValueError, OSError):
                existing = None
            if existing is not None:
                state.build_count = existing.build_count
                state.failure_count = existing.failure_count
                state.last_build_time = existing.last_build_time
                state.build_duration = existing.build_duration
            self._save_state_file(state)
            self._states[target.name] = state
            return state

    def read_state(self, target_name: str) -> PoltergeistState:
        """Return the state of a target, from memory or from its file."""
        with self._lock:
            cached = self._states.get(target_name)
        if cached is not None:
            return cached
        return self._load_state_file(target_name)

    def update_state(self, target_name: str, updates: dict[str, Any]) -> None:
        """Apply field updates; unknown keys go into the metadata."""
        with self._lock:
            state = self._states.get(target_name)
            if state is None:
                try:
                    state = self._load_state_file(target_name)
                except (StateNotFoundError, ValueError, OSError) as exc:
                    raise StateNotFoundError(
                        f"target state not found: {target_name}"
                    ) from exc
                self._states[target_name] = state

            for key, value in updates.items():
                self._apply_update(state, key, value)

            state.heartbeat = _now()
            self._save_state_file(state)

    def update_build_status(self, target_name: str, status: BuildStatus) -> None:
        """Set the build status, counting finished builds."""
        with self._lock:
            updates: dict[str, Any] = {"buildStatus": status}
            if status in (BuildStatus.SUCCEEDED, BuildStatus.FAILED):
                updates["lastBuildTime"] = _now()
                state = self._states.get(target_name)
                if state is not None:
                    if status is BuildStatus.SUCCEEDED:
                        updates["buildCount"] = state.build_count + 1
                    else:
                        updates["failureCount"] = state.failure_count + 1
            self.update_state(target_name, updates)

    def remove_state(self, target_name: str) -> None:
        """Forget a target and delete its state file."""
        with self._lock:
            self._states.pop(target_name, None)
            self._state_file(target_name).unlink(missing_ok=True)

    def is_locked(self, target_name: str) -> bool:
        """True when another live process holds a fresh state for the target."""
        try:
            state = self._load_state_file(target_name)
        except StateNotFoundError:
            return False
        if state.process_id == os.getpid():
            return False
        if state.heartbeat is None or _now() - state.heartbeat > STALE_HEARTBEAT:
            return False
        return _pid_alive(state.process_id)

    def discover_states(self) -> dict[str, PoltergeistState]:
        """Load every state file found in the state directory."""
        with self._lock:
            states: dict[str, PoltergeistState] = {}
            if not self.state_dir.is_dir():
                return states
            for path in sorted(self.state_dir.iterdir()):
                if path.suffix != ".json":
                    continue
                name = path.stem
                try:
                    states[name] = self._load_state_file(name)
                except (StateNotFoundError, ValueError, OSError) as exc:
                    self._logger.warning(
                        "Failed to load state file for %s: %s", name, exc
                    )
            return states

    def start_heartbeat(self, interval: float = HEARTBEAT_INTERVAL) -> None:
        """Refresh the heartbeat of all known states every ``interval`` seconds."""
        with self._lock:
            if self._heartbeat_thread is not None:
                return
            stop = threading.Event()
            self._heartbeat_stop = stop
            self._heartbeat_thread = threading.Thread(
                target=self._heartbeat_loop,
                args=(stop, interval),
                name="poltergeist-heartbeat",
                daemon=True,
            )
            self._heartbeat_thread.start()

    def stop_heartbeat(self) -> None:
        """Stop the heartbeat thread if it is running."""
        with self._lock:
            thread, stop = self._heartbeat_thread, self._heartbeat_stop
            self._heartbeat_thread = None
            self._heartbeat_stop = None
        if stop is not None:
            stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def cleanup(self) -> None:
        """Stop the heartbeat and mark all owned states as idle and released."""
        self.stop_heartbeat()
        with self._lock:
            for state in self._states.values():
                state.build_status = BuildStatus.IDLE
                state.process_id = 0
                try:
                    self._save_state_file(state)
                except OSError as exc:
                    self._logger.warning(
                        "Failed to save final state for %s: %s", state.target_name, exc
                    )

    @staticmethod
    def _apply_update(state: PoltergeistState, key: str, value: Any) -> None:
        if key == "buildStatus":
            if isinstance(value, BuildStatus):
                state.build_status = value
        elif key == "lastBuildTime":
            if isinstance(value, datetime):
                state.last_build_time = value
        elif key == "buildCount":
            if isinstance(value, int) and not isinstance(value, bool):
                state.build_count = value
        elif key == "failureCount":
            if isinstance(value, int) and not isinstance(value, bool):
                state.failure_count = value
        elif key == "lastError":
            if isinstance(value, str):
                state.last_error = value
        elif key == "buildDuration":
            if isinstance(value, timedelta):
                state.build_duration = value.total_seconds()
            elif isinstance(value, (int, float)) and not isinstance(value, bool):
                state.build_duration = float(value)
        elif key == "changedFiles":
            if isinstance(value, list) and all(isinstance(f, str) for f in value):
                state.changed_files = list(value)
        else:
            state.metadata[key] = value

    def _heartbeat_loop(self, stop: threading.Event, interval: float) -> None:
        while not stop.wait(interval):
            self._update_heartbeats()

    def _update_heartbeats(self) -> None:
        with self._lock:
            now = _now()
            for state in self._states.values():
                state.heartbeat = now
                try:
                    self._save_state_file(state)
                except OSError as exc:
                    self._logger.debug(
                        "Failed to update heartbeat for %s: %s", state.target_name, exc
                    )

    def _state_file(self, target_name: str) -> Path:
        return self.state_dir / f"{target_name}.json"

    def _load_state_file(self, target_name: str) -> PoltergeistState:
        path = self._state_file(target_name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise StateNotFoundError(f"no state for target: {target_name}") from None
        try:
            return PoltergeistState.from_dict(json.loads(text))
        except (ValueError, TypeError) as exc:
            raise ValueError(f"failed to parse state file: {exc}") from exc

    def _save_state_file(self, state: PoltergeistState) -> None:
        path = self._state_file(state.target_name)
        temp = path.with_name(path.name + ".tmp")
        data = json.dumps(state.to_dict(), indent=2)
        try:
            temp.write_text(data, encoding="utf-8")
            os.replace(temp, path)
        except OSError:
            temp.unlink(missing_ok=True)
            raise