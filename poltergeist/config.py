"""Configuration and scheduling data shared by the engine, queue and priority logic."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .targets import Target


@dataclass
class BuildPrioritization:
    """Settings for prioritised build scheduling; windows are in milliseconds."""

    enabled: bool = True
    focus_detection_window: int = 300_000
    priority_decay_time: int = 1_800_000
    build_timeout_multiplier: float = 2.0


@dataclass
class BuildSchedulingConfig:
    """How many builds may run at once and how they are prioritised."""

    parallelization: int = 2
    prioritization: BuildPrioritization = field(default_factory=BuildPrioritization)


@dataclass
class NotificationConfig:
    """Build notification settings."""

    enabled: bool | None = None


@dataclass
class PoltergeistConfig:
    """Top-level project configuration.

    ``targets`` holds raw target definitions (mappings or JSON text) that are
    turned into target objects with :func:`poltergeist.targets.parse_target`.
    """

    version: str = "1.0"
    project_type: str = ""
    targets: list[Any] = field(default_factory=list)
    build_scheduling: BuildSchedulingConfig | None = None
    notifications: NotificationConfig | None = None

    def notifications_enabled(self) -> bool:
        """True only when notifications are configured and explicitly enabled."""
        return self.notifications is not None and self.notifications.enabled is True


class ChangeType(str, Enum):
    """How a file change relates to the targets it affects."""

    DIRECT = "direct"
    SHARED = "shared"
    GENERATED = "generated"


@dataclass
class ChangeEvent:
    """A recorded file change; ``timestamp`` is seconds since the epoch."""

    file: str
    timestamp: float = field(default_factory=time.time)
    affected_targets: list[str] = field(default_factory=list)
    change_type: ChangeType = ChangeType.DIRECT
    impact_weight: float = 1.0


@dataclass
class BuildRequest:
    """A queued request to build one target."""

    target: Target
    priority: float = 50.0
    timestamp: float = field(default_factory=time.time)
    triggering_files: list[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class TargetPriority:
    """Priority information computed for a target; times are in seconds."""

    target: str
    score: float
    last_direct_change: float | None = None
    direct_change_frequency: float = 0.0
    focus_multiplier: float = 1.0
    avg_build_time: float = 0.0
    success_rate: float = 1.0
    recent_changes: list[ChangeEvent] = field(default_factory=list)