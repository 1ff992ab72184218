"""Builders that run a target's build command and check its results."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Iterable
from enum import Enum
from pathlib import Path
from typing import Any

from .targets import (
    AppBundleTarget,
    CMakeBuildType,
    CMakeCustomTarget,
    CMakeExecutableTarget,
    CMakeLibraryTarget,
    CustomTarget,
    DockerTarget,
    ExecutableTarget,
    FrameworkTarget,
    LibraryTarget,
    Target,
    TargetType,
    TestTarget,
)

_SHELL_OPERATORS = ("&&", "||", "|", ";")
_DEFAULT_LOGGER = logging.getLogger("poltergeist.builders")


class BuildError(RuntimeError):
    """Raised when a build command fails or produces no output."""

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class ValidationError(ValueError):
    """Raised when a builder's configuration is not usable."""


def _command_argv(command: str) -> list[str]:
    """Turn a command string into argv, using the shell for compound commands."""
    if any(op in command for op in _SHELL_OPERATORS):
        return ["sh", "-c", command]
    try:
        parts = shlex.split(command)
    except ValueError:
        parts = []
    return parts or ["sh", "-c", command]


class BaseBuilder:
    """Runs a target's build command in the project root and keeps build metrics."""

    def __init__(
        self,
        target: Target,
        project_root: str | os.PathLike[str],
        logger: logging.Logger | None = None,
        state_manager: Any = None,
    ) -> None:
        self.target = target
        self.project_root = str(project_root)
        self.state_manager = state_manager
        base = logger if logger is not None else _DEFAULT_LOGGER
        if target.name and isinstance(base, logging.Logger):
            base = base.getChild(target.name)
        self.logger = base
        self._lock = threading.Lock()
        self._last_build_time = 0.0
        self._total_builds = 0
        self._success_builds = 0

    def validate(self) -> None:
        """Check that the project root exists and the target can be built."""
        if not os.path.exists(self.project_root):
            raise ValidationError(f"project root does not exist: {self.project_root}")
        if not self.target.watch_paths:
            raise ValidationError(
                f"no watch paths defined for target {self.target.name}"
            )
        if not self.target.build_command:
            raise ValidationError(
                f"no build command defined for target {self.target.name}"
            )

    def build(self, changed_files: Iterable[str] | None = None) -> None:
        """Run the target's build command."""
        self._run(self.target.build_command, changed_files)

    def clean(self) -> None:
        """Remove build products; the default builder has nothing to clean."""

    def last_build_time(self) -> float:
        """Duration of the last build in seconds."""
        with self._lock:
            return self._last_build_time

    def success_rate(self) -> float:
        """Fraction of builds that succeeded; 1.0 before the first build."""
        with self._lock:
            if self._total_builds == 0:
                return 1.0
            return self._success_builds / self._total_builds

    def _run(self, command: str, changed_files: Iterable[str] | None) -> None:
        files = list(changed_files or [])
        start = time.monotonic()
        try:
            self.logger.info("Building with %d changed files", len(files))
            env = None
            if self.target.environment is not None:
                env = {**os.environ, **self.target.environment}
            try:
                proc = subprocess.run(
                    _command_argv(command),
                    cwd=self.project_root,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
            except OSError as exc:
                self.logger.error("Build failed: %s", exc)
                raise BuildError(f"build failed: {exc}") from exc

            output = proc.stdout.decode("utf-8", errors="replace")
            if proc.returncode != 0:
                self.logger.error(
                    "Build failed: exit status %d\n%s", proc.returncode, output
                )
                raise BuildError(
                    f"build failed: exit status {proc.returncode}\n{output}", output
                )

            with self._lock:
                self._success_builds += 1
            self.logger.info("Build completed in %.3fs", time.monotonic() - start)
            if output:
                self.logger.debug("Build output:\n%s", output)
        finally:
            with self._lock:
                self._last_build_time = time.monotonic() - start
                self._total_builds += 1

    def _resolve_path(self, path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.join(self.project_root, path)

    def _file_exists(self, path: str) -> bool:
        return os.path.exists(self._resolve_path(path))


class ExecutableBuilder(BaseBuilder):
    """Builds an executable and makes sure the output file is produced."""

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.output_path = (
            target.output_path if isinstance(target, ExecutableTarget) else ""
        )

    def validate(self) -> None:
        super().validate()
        if not self.output_path:
            raise ValidationError(
                f"output path not specified for executable target {self.target.name}"
            )

    def build(self, changed_files: Iterable[str] | None = None) -> None:
        if not self.output_path:
            super().build(changed_files)
            return

        output = self._resolve_path(self.output_path)
        if os.path.exists(output):
            try:
                os.remove(output)
            except OSError as exc:
                self.logger.warning("Failed to remove old executable: %s", exc)

        super().build(changed_files)

        if not os.path.exists(output):
            raise BuildError(f"build succeeded but output not found: {output}")
        try:
            os.chmod(output, 0o755)
        except OSError as exc:
            self.logger.warning("Failed to make output executable: %s", exc)


class AppBundleBuilder(BaseBuilder):
    """Builds an app bundle, optionally killing and relaunching the app."""

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.bundle_id = ""
        self.platform = None
        self.auto_relaunch = False
        self.launch_command = ""
        if isinstance(target, AppBundleTarget):
            self.bundle_id = target.bundle_id
            self.platform = target.platform
            self.auto_relaunch = bool(target.auto_relaunch)
            self.launch_command = target.launch_command

    def build(self, changed_files: Iterable[str] | None = None) -> None:
        if self.auto_relaunch:
            self._kill_running_app()

        super().build(changed_files)

        if self.auto_relaunch and self.launch_command:
            try:
                self._launch_app()
            except OSError as exc:
                self.logger.warning("Failed to relaunch app: %s", exc)

    def _kill_running_app(self) -> None:
        if not self.bundle_id:
            return
        for argv in (["pkill", "-f", self.bundle_id], ["killall", "-9", self.bundle_id]):
            try:
                result = subprocess.run(
                    argv,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    check=False,
                )
            except OSError:
                continue
            if result.returncode == 0:
                return

    def _launch_app(self) -> None:
        proc = subprocess.Popen(
            _command_argv(self.launch_command),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        threading.Thread(target=proc.wait, daemon=True).start()
        self.logger.info("App relaunched successfully")


class LibraryBuilder(BaseBuilder):
    """Builds a static or dynamic library."""

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.output_path = ""
        self.library_type = None
        if isinstance(target, LibraryTarget):
            self.output_path = target.output_path
            self.library_type = target.library_type


class FrameworkBuilder(BaseBuilder):
    """Builds a framework for a platform."""

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.output_path = ""
        self.platform = None
        if isinstance(target, FrameworkTarget):
            self.output_path = target.output_path
            self.platform = target.platform


class DockerBuilder(BaseBuilder):
    """Builds a Docker image with its configured tags."""

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.image_name = ""
        self.dockerfile = "Dockerfile"
        self.context = "."
        self.tags: list[str] = []
        if isinstance(target, DockerTarget):
            self.image_name = target.image_name
            if target.dockerfile:
                self.dockerfile = target.dockerfile
            if target.context:
                self.context = target.context
            self.tags = list(target.tags)

    def docker_command(self) -> str:
        """The ``docker build`` command used instead of the target's own."""
        parts = [f"docker build -f {self.dockerfile} -t {self.image_name}"]
        parts.extend(f"-t {self.image_name}:{tag}" for tag in self.tags)
        parts.append(self.context)
        return " ".join(parts)

    def build(self, changed_files: Iterable[str] | None = None) -> None:
        self._run(self.docker_command(), changed_files)


class TestBuilder(BaseBuilder):
    """Runs a test target, preferring its test command over the build command."""

    __test__ = False

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.test_command = ""
        self.coverage_file = ""
        if isinstance(target, TestTarget):
            self.test_command = target.test_command
            self.coverage_file = target.coverage_file

    def build(self, changed_files: Iterable[str] | None = None) -> None:
        self._run(self.test_command or self.target.build_command, changed_files)
        if self.coverage_file and self._file_exists(self.coverage_file):
            self.logger.info("Coverage report generated: %s", self.coverage_file)


class CustomBuilder(BaseBuilder):
    """Builds a custom target carrying free-form configuration."""

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.config: dict[str, Any] = (
            dict(target.config) if isinstance(target, CustomTarget) else {}
        )


class CMakeBuilder(BaseBuilder):
    """Common CMake settings and configuration step."""

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.generator = "Unix Makefiles"
        self.build_type: CMakeBuildType | str = CMakeBuildType.DEBUG
        self.cmake_args: list[str] = []
        self.target_name = ""
        self.parallel = True
        if isinstance(
            target, (CMakeExecutableTarget, CMakeLibraryTarget, CMakeCustomTarget)
        ):
            if target.generator:
                self.generator = target.generator
            if target.build_type:
                self.build_type = target.build_type
            self.cmake_args = list(target.cmake_args)
            self.target_name = target.target_name
            if target.parallel is not None:
                self.parallel = target.parallel

    def configure_command(self) -> str:
        """The ``cmake`` configuration command for the ``build`` directory."""
        build_type = (
            self.build_type.value
            if isinstance(self.build_type, Enum)
            else str(self.build_type)
        )
        command = (
            f'cmake -S . -B build -G "{self.generator}" '
            f"-DCMAKE_BUILD_TYPE={build_type}"
        )
        for arg in self.cmake_args:
            command += " " + arg
        return command

    def _configure(self) -> None:
        build_dir = Path(self._resolve_path("build"))
        try:
            build_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BuildError(f"failed to create build directory: {exc}") from exc
        self._run(self.configure_command(), [])


class CMakeExecutableBuilder(CMakeBuilder):
    """Builds a CMake executable target."""

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.output_path = (
            target.output_path if isinstance(target, CMakeExecutableTarget) else ""
        )


class CMakeLibraryBuilder(CMakeBuilder):
    """Builds a CMake library target."""

    def __init__(self, target, project_root, logger=None, state_manager=None):
        super().__init__(target, project_root, logger, state_manager)
        self.library_type = None
        self.output_path = ""
        if isinstance(target, CMakeLibraryTarget):
            self.library_type = target.library_type
            self.output_path = target.output_path


class CMakeCustomBuilder(CMakeBuilder):
    """Builds a custom CMake target."""


_BUILDERS: dict[TargetType, type[BaseBuilder]] = {
    TargetType.EXECUTABLE: ExecutableBuilder,
    TargetType.APP_BUNDLE: AppBundleBuilder,
    TargetType.LIBRARY: LibraryBuilder,
    TargetType.FRAMEWORK: FrameworkBuilder,
    TargetType.TEST: TestBuilder,
    TargetType.DOCKER: DockerBuilder,
    TargetType.CMAKE_EXECUTABLE: CMakeExecutableBuilder,
    TargetType.CMAKE_LIBRARY: CMakeLibraryBuilder,
    TargetType.CMAKE_CUSTOM: CMakeCustomBuilder,
    TargetType.CUSTOM: CustomBuilder,
}


class BuilderFactory:
    """Creates the builder that matches a target's type."""

    def create_builder(
        self,
        target: Target,
        project_root: str | os.PathLike[str],
        logger: logging.Logger | None = None,
        state_manager: Any = None,
    ) -> BaseBuilder:
        cls = _BUILDERS.get(target.type, BaseBuilder)
        return cls(target, project_root, logger, state_manager)