[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mpcium"
version = "0.1.0"
description = "Node-side building blocks for a threshold-signature MPC cluster: logging, an encrypted key-value store with encrypted incremental backups, Ed25519 node identities and messaging over NATS-style connections."
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = ["mpc", "threshold-signatures", "ed25519", "aes-gcm", "age", "backup", "nats", "jetstream"]
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
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Archiving :: Backup",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["mpcium"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
