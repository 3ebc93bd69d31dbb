[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rsynckit"
version = "0.1.0"
description = "Building blocks of the rsync sender and the rsync daemon inband exchange, in pure Python"
requires-python = ">=3.10"
dependencies = []
keywords = ["rsync", "mirroring", "file transfer", "file list", "daemon"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Archiving :: Mirroring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rsynckit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
