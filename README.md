# poltergeist

A library for orchestrating builds of many targets in one project. It
describes build targets, runs their build commands, keeps a persistent
JSON state file per target, ranks pending builds by priority and runs
them with limited parallelism. It has no dependencies outside the
standard library.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Targets

Targets are plain mappings (or JSON text), as they appear in a project
configuration, turned into typed dataclasses with
`poltergeist.targets.parse_target`:

```python
from poltergeist.targets import parse_target

target = parse_target({
    "name": "app",
    "type": "executable",
    "buildCommand": "cc -o app main.c",
    "watchPaths": ["*.c"],
    "outputPath": "app",
})
```

Keys are the camel-case forms of the dataclass fields (`buildCommand`,
`watchPaths`, `settlingDelay`, ...). The `type` selects the class:
`executable`, `app-bundle`, `library`, `framework`, `test`, `docker`,
`custom`, `cmake-executable`, `cmake-library` and `cmake-custom`. A
missing name or type, an unknown type or a malformed value raises
`TargetParseError`. The enums `TargetType`, `BuildStatus`, `LibraryType`,
`Platform` and `CMakeBuildType` live in the same module.

## Building

`BuilderFactory.create_builder` picks the builder for a target's type,
falling back to `BaseBuilder`:

```python
from poltergeist.builders import BuilderFactory

builder = BuilderFactory().create_builder(target, "/path/to/project", None, None)
builder.validate()              # raises ValidationError
builder.build(["main.c"])       # raises BuildError on failure
print(builder.last_build_time(), builder.success_rate())
```

Commands run in the project root with the target's `environment` added
to the process environment; commands containing `&&`, `||`, `|` or `;`
run through `sh -c`. A failed command raises `BuildError`, whose
`output` holds the combined stdout and stderr.

- `ExecutableBuilder` requires an `output_path`, removes the old output
  before building, raises `BuildError` if the output is missing
  afterwards, and makes it executable.
- `AppBundleBuilder`, when `auto_relaunch` is set, stops the running app
  by bundle ID (`pkill -f`, then `killall -9`) before building and starts
  `launch_command` in the background afterwards.
- `DockerBuilder` runs the command returned by `docker_command()`, built
  from the image name, Dockerfile (default `Dockerfile`), context
  (default `.`) and tags.
- `TestBuilder` runs `test_command` when set, otherwise the build command.
- The CMake builders carry generator (default `Unix Makefiles`), build
  type (default `Debug`), extra arguments and parallelism;
  `configure_command()` returns the `cmake -S . -B build ...` command.
  Their `build` runs the target's own build command.

## Persistent state

`StateManager` keeps one JSON file per target under
`.poltergeist/state/` in the project root, written atomically:

```python
from poltergeist.state import StateManager
from poltergeist.targets import BuildStatus

states = StateManager("/path/to/project")
states.initialize_state(target)
states.update_build_status("app", BuildStatus.SUCCEEDED)
print(states.read_state("app").build_count)
```

`initialize_state` keeps the build statistics of an existing file.
`update_state` applies known keys (`buildStatus`, `buildCount`,
`lastError`, ...) and stores any other key in the state's metadata.
Reading or updating an unknown target raises `StateNotFoundError`.
`start_heartbeat(interval)` refreshes all heartbeats in a background
thread; `is_locked` reports whether another live process holds a state
with a heartbeat newer than 30 seconds. `discover_states`,
`remove_state` and `cleanup` (which marks every state idle with process
ID 0) complete the set.

## Scheduling

- `poltergeist.priority.PriorityEngine` scores targets from 0 to 100
  from how recently and how often their files changed, their success
  rate and their last build time.
- `poltergeist.build_queue.IntelligentBuildQueue` keeps build requests
  ordered by priority, skips targets already queued or building, and
  after `start()` runs them on background threads up to the configured
  parallelism.
- `poltergeist.safegroup.SafeGroup` runs functions concurrently with an
  optional limit; `wait()` raises the first failure as a `PanicError`.

Configuration dataclasses (`PoltergeistConfig`, `BuildSchedulingConfig`,
`BuildPrioritization`, `NotificationConfig`, `BuildRequest`,
`ChangeEvent`, `TargetPriority`) are in `poltergeist.config`.

## The engine

`poltergeist.engine.Poltergeist` ties it together. Given a
`PoltergeistConfig`, a project root and a `PoltergeistDependencies`
holding a state manager, a builder factory, a file-watching client and
its configuration manager, `start(target_name)` validates and registers
the enabled targets, subscribes to their watch paths, and performs the
initial builds. File changes either go to the build queue or trigger a
build after the target's settling delay. `stop(timeout)` shuts down
within the timeout, and `cleanup()` releases the target states. Failures
to start raise `EngineError`.

## Other helpers

- `poltergeist.tracing`: an immutable `TraceContext` with `with_*` /
  `get_*` helpers, `enrich_context` and `tracing_fields` for structured
  logging.
- `poltergeist.process`: `ProcessManager`, which runs shutdown handlers
  in reverse order on a stop event or a termination signal and can call
  a heartbeat function periodically; `get_process_info` and
  `kill_process`.

## What it does not do

- There is no file watcher. The engine expects the caller to supply a
  watching client (with `connect`, `watch_project`, `subscribe`,
  `is_connected`, `disconnect`) and its configuration manager (with
  `ensure_config_up_to_date`, `suggest_optimizations`,
  `create_exclusion_expressions`, `normalize_watch_pattern`,
  `validate_watch_pattern`).
- There is no command-line program and no configuration file loader.
- No build notifier is included; one can be passed in through
  `PoltergeistDependencies.notifier`.
- A change to the configuration file is only logged; the configuration
  is not reloaded.