import json

import pytest

from poltergeist.targets import (
    AppBundleTarget,
    CMakeBuildType,
    CMakeLibraryTarget,
    DockerTarget,
    ExecutableTarget,
    LibraryTarget,
    Platform,
    TargetParseError,
    TargetType,
    TestTarget,
    parse_target,
)

MAIN_TARGET = """{
    "name": "main",
    "type": "executable",
    "buildCommand": "go build -o main main.go",
    "watchPaths": ["*.go"],
    "outputPath": "main"
}"""


def test_parse_executable_from_json():
    target = parse_target(MAIN_TARGET)
    assert isinstance(target, ExecutableTarget)
    assert target.name == "main"
    assert target.type is TargetType.EXECUTABLE
    assert target.build_command == "go build -o main main.go"
    assert target.watch_paths == ["*.go"]
    assert target.output_path == "main"
    assert target.enabled is True


def test_parse_accepts_bytes_and_mapping():
    from_bytes = parse_target(MAIN_TARGET.encode())
    from_dict = parse_target(json.loads(MAIN_TARGET))
    assert from_bytes == from_dict


def test_parse_optional_numbers():
    target = parse_target(
        {
            "name": "test",
            "type": "executable",
            "buildCommand": "echo 'building'",
            "watchPaths": ["*.go"],
            "outputPath": "test",
            "settlingDelay": 100,
            "debounceInterval": 50,
            "maxRetries": 2,
        }
    )
    assert target.settling_delay == 100
    assert target.debounce_interval == 50
    assert target.max_retries == 2


def test_parse_disabled_target():
    target = parse_target({"name": "x", "type": "executable", "enabled": False})
    assert target.enabled is False


def test_parse_docker_target():
    target = parse_target(
        {
            "name": "test-image",
            "type": "docker",
            "buildCommand": "docker build",
            "watchPaths": ["Dockerfile"],
            "imageName": "poltergeist-test",
            "dockerfile": "Dockerfile",
            "context": ".",
            "tags": ["latest", "test"],
        }
    )
    assert isinstance(target, DockerTarget)
    assert target.image_name == "poltergeist-test"
    assert target.tags == ["latest", "test"]
    assert target.context == "."


def test_parse_app_bundle_enums():
    target = parse_target(
        {
            "name": "TestApp",
            "type": TargetType.APP_BUNDLE.value,
            "bundleId": "com.test.app",
            "platform": Platform.MACOS.value,
            "autoRelaunch": True,
            "launchCommand": "echo 'launching app'",
        }
    )
    assert isinstance(target, AppBundleTarget)
    assert target.platform is Platform.MACOS
    assert target.bundle_id == "com.test.app"
    assert target.auto_relaunch is True


def test_parse_cmake_library():
    target = parse_target(
        {
            "name": "mathlib",
            "type": TargetType.CMAKE_LIBRARY.value,
            "buildType": CMakeBuildType.DEBUG.value,
            "targetName": "mathlib",
            "cmakeArgs": ["-DFOO=ON"],
        }
    )
    assert isinstance(target, CMakeLibraryTarget)
    assert target.build_type is CMakeBuildType.DEBUG
    assert target.cmake_args == ["-DFOO=ON"]
    assert target.parallel is None


@pytest.mark.parametrize("target_type", list(TargetType))
def test_every_type_round_trips_through_parse(target_type):
    target = parse_target({"name": "t", "type": target_type.value})
    assert target.type is target_type
    assert target.name == "t"


def test_test_target_fields():
    target = parse_target(
        {"name": "unit", "type": "test", "testCommand": "pytest", "coverageFile": "cov.xml"}
    )
    assert isinstance(target, TestTarget)
    assert target.test_command == "pytest"
    assert target.coverage_file == "cov.xml"


def test_unknown_type_raises():
    with pytest.raises(TargetParseError, match="unknown target type"):
        parse_target({"name": "x", "type": "spaceship"})


def test_missing_type_raises():
    with pytest.raises(TargetParseError):
        parse_target({"name": "x"})


def test_missing_name_raises():
    with pytest.raises(TargetParseError):
        parse_target({"type": "executable"})


def test_invalid_json_raises():
    with pytest.raises(TargetParseError):
        parse_target("{not json")


def test_non_object_raises():
    with pytest.raises(TargetParseError):
        parse_target("[1, 2, 3]")


def test_invalid_enum_value_raises():
    with pytest.raises(TargetParseError):
        parse_target({"name": "lib", "type": "library", "libraryType": "bogus"})


def test_watch_paths_must_be_list():
    with pytest.raises(TargetParseError):
        parse_target({"name": "x", "type": "executable", "watchPaths": "*.go"})


def test_direct_construction_and_mutation():
    target = LibraryTarget(name="lib", build_command="make")
    target.build_command = "make all"
    assert target.build_command == "make all"
    assert target.type is TargetType.LIBRARY
    assert target.watch_paths == []