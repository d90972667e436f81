[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mpcium"
version = "0.1.0"
description = "Encrypted key-value storage, incremental encrypted backups, messaging primitives and structured logging for MPC nodes"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = ["mpc", "kvstore", "backup", "aes-gcm", "messaging", "work-queue", "pubsub", "logging"]
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
    "Topic :: Database",
    "Topic :: Security :: Cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["mpcium"]

[tool.pytest.ini_options]
addopts = "-ra"
