[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodeprov"
version = "0.1.0"
description = "Container-backed cluster nodes managed through the docker and podman command-line tools"
requires-python = ">=3.10"
keywords = ["containers", "docker", "podman", "cluster", "nodes", "kubernetes"]
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
    "Topic :: System :: Clustering",
]
dependencies = [
    "semver>=3.0",
]

[project.optional-dependencies]
test = [
    "pytest>=7.0",
]

[tool.hatch.build.targets.wheel]
packages = ["nodeprov"]

[tool.pytest.ini_options]
addopts = "-ra"
