[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lmstfy"
version = "0.1.0"
description = "A Redis-backed job queue engine with delays, retries, time-to-run, dead letters and in-process metrics"
requires-python = ">=3.10"
keywords = ["queue", "task-queue", "delay-queue", "redis", "jobs", "dead-letter"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "redis",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["lmstfy"]

[tool.pytest.ini_options]
addopts = "-ra"
