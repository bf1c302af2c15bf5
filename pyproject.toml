[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chunkfs"
version = "0.1.0"
description = "Client side of a chunk-based distributed filesystem: metadata caching, leases, buffered writes and replica reads"
requires-python = ">=3.10"
dependencies = []
keywords = ["filesystem", "distributed", "chunks", "leases", "replication", "cache"]
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
    "Topic :: System :: Filesystems",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["chunkfs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
