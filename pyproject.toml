[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tsdfslam"
version = "0.1.0"
description = "Truncated signed distance field mapping, scan registration and point cloud filtering for lidar data"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["tsdf", "slam", "lidar", "point cloud", "registration", "mapping"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["tsdfslam"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
