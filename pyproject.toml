[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gossipmesh"
version = "0.1.0"
description = "Building blocks for a gossip cluster: Lamport clocks, msgpack wire messages, events, queries, keyring management and state exchange"
requires-python = ">=3.10"
keywords = ["gossip", "cluster", "membership", "lamport", "msgpack", "distributed"]
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
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "msgpack",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["gossipmesh"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
