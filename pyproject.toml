[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fpdaemon"
version = "0.1.0"
description = "Finality provider core: local stores, chain polling, public randomness commitment and finality voting"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "finality",
    "finality-provider",
    "eots",
    "schnorr",
    "randomness",
    "merkle",
    "key-value store",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["fpdaemon"]

[tool.hatch.build.targets.sdist]
include = ["fpdaemon", "tests", "pyproject.toml"]

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
