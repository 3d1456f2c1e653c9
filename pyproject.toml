[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "logpipe"
version = "0.1.0"
description = "An in-process event pipeline for log shipping: decoding, ordered streams, processors with matching actions, batching, antispam and metrics."
requires-python = ">=3.10"
dependencies = []
keywords = [
    "logging",
    "log-shipping",
    "pipeline",
    "events",
    "streams",
    "batching",
    "antispam",
    "metrics",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Logging",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["logpipe"]

[tool.hatch.build.targets.sdist]
include = ["logpipe", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
