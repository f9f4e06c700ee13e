[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "phantomwire"
version = "4.0.0"
description = "Reliable ARQ transport over UDP, FakeTCP packet codec and eBPF helper types"
requires-python = ">=3.10"
dependencies = []
keywords = ["arq", "udp", "reliable-transport", "tcp", "checksum", "ebpf", "networking"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["phantomwire"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
