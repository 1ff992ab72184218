[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "poltergeist"
version = "0.1.0"
description = "Build orchestration library: typed build targets, builders, persistent per-target state and prioritised build scheduling."
requires-python = ">=3.10"
dependencies = []
keywords = ["build", "rebuild", "orchestration", "scheduling", "cmake", "docker"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools.packages.find]
include = ["poltergeist*"]

[tool.pytest.ini_options]
addopts = "-ra"
