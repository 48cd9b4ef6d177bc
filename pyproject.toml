[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "homa"
version = "0.1.0"
description = "Sender side of a receiver-driven, message-oriented transport: packetised outbound messages, grants, resends and timeouts."
requires-python = ">=3.10"
dependencies = []
keywords = ["transport", "networking", "homa", "srpt", "grants", "protocol"]
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
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["homa"]

[tool.pytest.ini_options]
addopts = "-ra"
