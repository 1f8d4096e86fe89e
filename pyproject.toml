[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "docsync"
version = "1.0.0"
description = "Client/server directory synchronisation over TCP with replicated backup servers and ring leader election"
requires-python = ">=3.10"
dependencies = [
    "watchdog",
]
keywords = ["sync", "file-sharing", "replication", "leader-election", "tcp"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: File Sharing",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
docsync-client = "docsync.client_app:main"
docsync-server = "docsync.server:main"

[tool.hatch.build.targets.wheel]
packages = ["docsync"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
