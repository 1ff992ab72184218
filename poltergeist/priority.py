"""Build priority scoring from change history and build metrics."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .config import BuildSchedulingConfig, ChangeEvent, ChangeType, TargetPriority

BASE_PRIORITY = 50.0
MAX_RECENT_CHANGES = 100
FAST_BUILD = 5.0
SLOW_BUILD = 30.0


@dataclass
class _TargetMetrics:
    last_build_time: float = 0.0
    total_builds: int = 0
    successful_builds: int = 0
    last_direct_change: float | None = None
    change_frequency: float = 0.0
    recent_changes: list[ChangeEvent] = field(default_factory=list)


@dataclass
class _FileChangeRecord:
    timestamp: float
    targets: list[str]


def _seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


def _target_name(target: Any) -> str:
    return target if isinstance(target, str) else target.name


class PriorityEngine:
    """Scores targets so that recently edited, healthy, fast targets build first.

    Times are seconds; ``clock`` returns the current time in seconds since the epoch.
    """

    def __init__(
        self,
        config: BuildSchedulingConfig | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._metrics: dict[str, _TargetMetrics] = {}
        self._file_changes: dict[str, list[_FileChangeRecord]] = {}
        self._lock = threading.RLock()

    def calculate_priority(self, target: Any, triggering_files: Iterable[str] = ()) -> float:
        """Priority in the range 0 to 100 for building ``target``."""
        with self._lock:
            metrics = self._metrics.get(_target_name(target))
            if metrics is None:
                return BASE_PRIORITY

            prio = (self.config or BuildSchedulingConfig()).prioritization
            now = self._clock()
            score = BASE_PRIORITY

            if self._in_focus(metrics, now, prio.focus_detection_window):
                score += 30.0

            score += metrics.change_frequency * 10.0

            if metrics.total_builds > 0:
                rate = metrics.successful_builds / metrics.total_builds
                score *= 0.5 + rate * 0.5

            if metrics.last_build_time < FAST_BUILD:
                score += 10.0
            elif metrics.last_build_time > SLOW_BUILD:
                score -= 10.0

            decay = prio.priority_decay_time / 1000.0
            for change in metrics.recent_changes:
                age = now - change.timestamp
                if age < decay:
                    score += (1.0 - age / decay) * 5.0

            return min(max(score, 0.0), 100.0)

    def update_target_metrics(
        self, target: str, build_time: float | timedelta, success: bool
    ) -> None:
        """Record the outcome and duration of a finished build."""
        with self._lock:
            metrics = self._metrics.setdefault(target, _TargetMetrics())
            metrics.last_build_time = _seconds(build_time)
            metrics.total_builds += 1
            if success:
                metrics.successful_builds += 1
            self._update_change_frequency(metrics)

    def get_target_priority(self, target: str) -> TargetPriority | None:
        """Priority details for a target, or ``None`` if nothing is known of it."""
        with self._lock:
            metrics = self._metrics.get(target)
            if metrics is None:
                return None

            success_rate = metrics.successful_builds / max(metrics.total_builds, 1)
            score = BASE_PRIORITY
            if self.config is not None and self.config.prioritization.enabled:
                prio = self.config.prioritization
                if self._in_focus(metrics, self._clock(), prio.focus_detection_window):
                    score += 30.0
                score += metrics.change_frequency * 10.0
                score += min(metrics.last_build_time / 10.0, 10.0)
                score += (1.0 - success_rate) * 20.0

            return TargetPriority(
                target=target,
                score=score,
                last_direct_change=metrics.last_direct_change,
                direct_change_frequency=metrics.change_frequency,
                focus_multiplier=1.0,
                avg_build_time=metrics.last_build_time,
                success_rate=success_rate,
                recent_changes=list(metrics.recent_changes),
            )

    def record_file_change(self, file: str, targets: Iterable[str]) -> None:
        """Note that ``file`` changed and directly affects ``targets``."""
        names = list(targets)
        with self._lock:
            now = self._clock()
            self._file_changes.setdefault(file, []).append(
                _FileChangeRecord(timestamp=now, targets=names)
            )
            for name in names:
                metrics = self._metrics.setdefault(name, _TargetMetrics())
                metrics.last_direct_change = now
                metrics.recent_changes.append(
                    ChangeEvent(
                        file=file,
                        timestamp=now,
                        affected_targets=list(names),
                        change_type=ChangeType.DIRECT,
                        impact_weight=1.0,
                    )
                )
                if len(metrics.recent_changes) > MAX_RECENT_CHANGES:
                    del metrics.recent_changes[0]
                self._update_change_frequency(metrics)

    @staticmethod
    def _in_focus(metrics: _TargetMetrics, now: float, window_ms: int) -> bool:
        if metrics.last_direct_change is None:
            return False
        return now - metrics.last_direct_change < window_ms / 1000.0

    @staticmethod
    def _update_change_frequency(metrics: _TargetMetrics) -> None:
        changes = metrics.recent_changes
        if len(changes) < 2:
            metrics.change_frequency = 0.0
            return
        total = sum(b.timestamp - a.timestamp for a, b in zip(changes, changes[1:]))
        average = total / (len(changes) - 1)
        # Changes per minute.
        metrics.change_frequency = 60.0 / average if average > 0 else 0.0