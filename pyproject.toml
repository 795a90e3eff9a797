[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lrzpack"
version = "0.1.0"
description = "Long-range redundancy compression: rzip match search over multiplexed, block-compressed streams"
requires-python = ">=3.10"
dependencies = [
    "lz4",
]
keywords = [
    "compression",
    "rzip",
    "long-range",
    "deduplication",
    "archive",
    "lzma",
    "bzip2",
    "zlib",
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
    "Topic :: System :: Archiving :: Compression",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["lrzpack"]

[tool.hatch.build.targets.sdist]
include = [
    "lrzpack",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
