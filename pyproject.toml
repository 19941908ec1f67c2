[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "thickcni"
version = "0.1.0"
description = "Building blocks for a thick multi-network CNI plugin: the shim client, daemon configuration, config generation and watching, chrooted plugin execution, and result-cache gateway editing."
requires-python = ">=3.10"
keywords = ["cni", "kubernetes", "networking", "container", "multi-network"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Typing :: Typed",
]
dependencies = [
    "semver",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["thickcni"]

[tool.hatch.build.targets.sdist]
include = ["thickcni", "tests"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
ignore_missing_imports = true
