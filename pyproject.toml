[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "surfelmaps"
version = "0.1.0"
description = "Rolling grid map levels with surfel cells and surfel-based scan registration"
requires-python = ">=3.10"
dependencies = [
    "numpy",
]
keywords = ["surfel", "registration", "occupancy grid", "laser", "mapping", "levenberg-marquardt"]
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
    "Topic :: Scientific/Engineering :: Image Processing",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["surfelmaps"]

[tool.pytest.ini_options]
addopts = "-ra"
