[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hami"
version = "0.1.0"
description = "GPU sharing helpers: NVIDIA device request accounting, OCI spec editing and vGPU shared-region monitoring"
requires-python = ">=3.10"
dependencies = []
keywords = ["gpu", "vgpu", "kubernetes", "scheduler", "nvidia", "oci", "monitoring"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["hami"]

[tool.pytest.ini_options]
addopts = "-ra"
