[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gpuplugin"
version = "0.14.1"
description = "GPU resource management building blocks: device maps, replicas, distributed allocation, health checks and vGPU detection"
requires-python = ">=3.10"
dependencies = []
keywords = ["gpu", "mig", "vgpu", "device-plugin", "pci", "time-slicing", "health-check"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["gpuplugin"]

[tool.pytest.ini_options]
addopts = "-ra"
