[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hierarchyns"
version = "0.1.0"
description = "Hierarchical namespace model: forest structure, hierarchy configuration reconciliation and admission validation"
requires-python = ">=3.10"
dependencies = []
keywords = ["namespaces", "hierarchy", "multi-tenancy", "reconciler", "admission", "validation"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["hierarchyns"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
