[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vmlb"
version = "0.1.0"
description = "Load balancer management for virtual machine workloads: TCP health probing, service and endpoint reconciliation, admission checks and version conversion."
requires-python = ">=3.10"
keywords = ["load-balancer", "health-check", "admission", "endpoints", "virtual-machines"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
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
dependencies = [
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["vmlb"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
