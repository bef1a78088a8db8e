[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "reapikit"
version = "0.1.0"
description = "Remote execution API building blocks: content digests, merkle trees, CAS upload planning and a simple C/C++ include scanner"
requires-python = ">=3.10"
dependencies = [
    "zstandard",
]
keywords = ["remote-execution", "cas", "merkle-tree", "digest", "build", "include-scanner", "hmap"]
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
    "Topic :: Software Development :: Build Tools",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["reapikit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
