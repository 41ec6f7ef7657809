[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tinyfd"
version = "0.1.0"
description = "HDLC-style full-duplex link protocol state machine (ABM and NRM) with windowed, acknowledged delivery"
requires-python = ">=3.10"
dependencies = []
keywords = ["hdlc", "protocol", "full-duplex", "abm", "nrm", "link-layer"]
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
    "Topic :: Communications",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["tinyfd"]

[tool.pytest.ini_options]
addopts = "-ra"
