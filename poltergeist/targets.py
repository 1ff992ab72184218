"""Build target definitions and parsing of raw target configuration."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar


class TargetType(str, Enum):
    """Kinds of build targets."""

    EXECUTABLE = "executable"
    APP_BUNDLE = "app-bundle"
    LIBRARY = "library"
    FRAMEWORK = "framework"
    TEST = "test"
    DOCKER = "docker"
    CUSTOM = "custom"
    CMAKE_EXECUTABLE = "cmake-executable"
    CMAKE_LIBRARY = "cmake-library"
    CMAKE_CUSTOM = "cmake-custom"


class BuildStatus(str, Enum):
    """Lifecycle status of a target's build."""

    IDLE = "idle"
    BUILDING = "building"
    SUCCEEDED = "success"
    FAILED = "failure"


class LibraryType(str, Enum):
    """Linkage kind of a library target."""

    STATIC = "static"
    DYNAMIC = "dynamic"


class Platform(str, Enum):
    """Platforms an app bundle or framework can target."""

    MACOS = "macos"
    IOS = "ios"
    WATCHOS = "watchos"
    TVOS = "tvos"
    VISIONOS = "visionos"


class CMakeBuildType(str, Enum):
    """CMake build configurations."""

    DEBUG = "Debug"
    RELEASE = "Release"
    REL_WITH_DEB_INFO = "RelWithDebInfo"
    MIN_SIZE_REL = "MinSizeRel"


class TargetParseError(ValueError):
    """Raised when a raw target definition cannot be turned into a target."""


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise TypeError("expected a list of strings")
    return list(value)


def _str_dict(value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise TypeError("expected an object")
    return {str(k): str(v) for k, v in value.items()}


def _meta(convert=None, key=None) -> dict[str, Any]:
    return {"convert": convert, "key": key}


@dataclass(kw_only=True)
class Target:
    """Settings shared by every kind of build target."""

    target_type: ClassVar[TargetType | None] = None

    name: str = ""
    enabled: bool = True
    build_command: str = ""
    watch_paths: list[str] = field(default_factory=list, metadata=_meta(_str_list))
    settling_delay: int = 1000
    environment: dict[str, str] | None = field(default=None, metadata=_meta(_str_dict))
    max_retries: int = 3
    backoff_multiplier: float = 2.0
    debounce_interval: int = 100
    icon: str = ""

    @property
    def type(self) -> TargetType | None:
        """The kind of this target."""
        return self.target_type


@dataclass(kw_only=True)
class ExecutableTarget(Target):
    target_type: ClassVar[TargetType] = TargetType.EXECUTABLE

    output_path: str = ""


@dataclass(kw_only=True)
class AppBundleTarget(Target):
    target_type: ClassVar[TargetType] = TargetType.APP_BUNDLE

    bundle_id: str = ""
    platform: Platform | None = field(default=None, metadata=_meta(Platform))
    auto_relaunch: bool | None = None
    launch_command: str = ""


@dataclass(kw_only=True)
class LibraryTarget(Target):
    target_type: ClassVar[TargetType] = TargetType.LIBRARY

    output_path: str = ""
    library_type: LibraryType | None = field(default=None, metadata=_meta(LibraryType))


@dataclass(kw_only=True)
class FrameworkTarget(Target):
    target_type: ClassVar[TargetType] = TargetType.FRAMEWORK

    output_path: str = ""
    platform: Platform | None = field(default=None, metadata=_meta(Platform))


@dataclass(kw_only=True)
class TestTarget(Target):
    __test__ = False
    target_type: ClassVar[TargetType] = TargetType.TEST

    test_command: str = ""
    coverage_file: str = ""


@dataclass(kw_only=True)
class DockerTarget(Target):
    target_type: ClassVar[TargetType] = TargetType.DOCKER

    image_name: str = ""
    dockerfile: str = ""
    context: str = ""
    tags: list[str] = field(default_factory=list, metadata=_meta(_str_list))


@dataclass(kw_only=True)
class CustomTarget(Target):
    target_type: ClassVar[TargetType] = TargetType.CUSTOM

    config: dict[str, Any] = field(default_factory=dict, metadata=_meta(dict))


@dataclass(kw_only=True)
class _CMakeTarget(Target):
    generator: str = ""
    build_type: CMakeBuildType | None = field(
        default=None, metadata=_meta(CMakeBuildType)
    )
    cmake_args: list[str] = field(default_factory=list, metadata=_meta(_str_list))
    target_name: str = ""
    parallel: bool | None = None


@dataclass(kw_only=True)
class CMakeExecutableTarget(_CMakeTarget):
    target_type: ClassVar[TargetType] = TargetType.CMAKE_EXECUTABLE

    output_path: str = ""


@dataclass(kw_only=True)
class CMakeLibraryTarget(_CMakeTarget):
    target_type: ClassVar[TargetType] = TargetType.CMAKE_LIBRARY

    library_type: LibraryType | None = field(default=None, metadata=_meta(LibraryType))
    output_path: str = ""


@dataclass(kw_only=True)
class CMakeCustomTarget(_CMakeTarget):
    target_type: ClassVar[TargetType] = TargetType.CMAKE_CUSTOM


_TARGET_CLASSES: dict[TargetType, type[Target]] = {
    cls.target_type: cls
    for cls in (
        ExecutableTarget,
        AppBundleTarget,
        LibraryTarget,
        FrameworkTarget,
        TestTarget,
        DockerTarget,
        CustomTarget,
        CMakeExecutableTarget,
        CMakeLibraryTarget,
        CMakeCustomTarget,
    )
}


def _camel(name: str) -> str:
    return re.sub(r"_([a-z])", lambda m: m.group(1).upper(), name)


def parse_target(raw: str | bytes | bytearray | Mapping[str, Any]) -> Target:
    """Build the matching target object from a JSON text or a mapping."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TargetParseError(f"invalid target JSON: {exc}") from exc
    else:
        data = raw

    if not isinstance(data, Mapping):
        raise TargetParseError("target definition must be a JSON object")

    type_value = data.get("type")
    if not type_value:
        raise TargetParseError("target type is required")
    try:
        target_type = TargetType(type_value)
    except ValueError:
        raise TargetParseError(f"unknown target type: {type_value}") from None

    name = data.get("name")
    if not isinstance(name, str) or not name:
        raise TargetParseError("target name is required")

    cls = _TARGET_CLASSES[target_type]
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        key = f.metadata.get("key") or _camel(f.name)
        if key not in data or data[key] is None:
            continue
        value = data[key]
        convert = f.metadata.get("convert")
        if convert is not None:
            try:
                value = convert(value)
            except (ValueError, TypeError) as exc:
                raise TargetParseError(
                    f"invalid value for {key!r} in target {name!r}: {exc}"
                ) from exc
        kwargs[f.name] = value
    return cls(**kwargs)