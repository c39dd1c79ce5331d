[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "taskconsole"
version = "0.1.0"
description = "Collects and aggregates task, resource and async-operation diagnostics from an async runtime and streams them to in-process console clients."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "async",
    "asyncio",
    "diagnostics",
    "instrumentation",
    "tasks",
    "tracing",
    "debugging",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Software Development :: Debuggers",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["taskconsole"]

[tool.hatch.build.targets.sdist]
include = [
    "taskconsole",
    "tests",
    "README.md",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
