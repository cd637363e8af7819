[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gpushare"
version = "0.0.1"
description = "Scheduler extender and admission webhook for sharing GPU devices between cluster workloads"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kubernetes",
    "scheduler",
    "scheduler-extender",
    "gpu",
    "vgpu",
    "device-sharing",
    "admission-webhook",
    "binpack",
    "spread",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
gpushare-scheduler = "gpushare.routes:main"
gpushare-version = "gpushare.version:main"

[tool.hatch.build.targets.wheel]
packages = ["gpushare"]

[tool.hatch.build.targets.sdist]
include = ["gpushare", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
