[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mctpkit"
version = "0.1.0"
description = "MCTP (Management Component Transport Protocol) endpoint and bridge stack with ASPEED LPC/KCS and I3C bindings"
requires-python = ">=3.10"
dependencies = []
keywords = ["mctp", "dmtf", "bmc", "i3c", "lpc", "kcs", "management"]
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
    "Topic :: System :: Networking",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mctpkit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
