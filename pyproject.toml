[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ci_pipelines_exporter"
version = "0.1.0"
description = "Building blocks for collecting GitLab CI pipeline, job, environment and test-report metrics"
requires-python = ">=3.10"
dependencies = [
    "requests",
]
keywords = [
    "gitlab",
    "ci",
    "pipelines",
    "metrics",
    "monitoring",
    "webhooks",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
    "Topic :: System :: Monitoring",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[tool.hatch.build.targets.wheel]
packages = ["ci_pipelines_exporter"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
