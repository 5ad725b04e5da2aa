[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "securitycheck"
version = "0.1.0"
description = "Reconciler that audits pods in a namespace against security rules and reports violations."
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "operator", "controller", "reconciler", "pod-security", "audit"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
securitycheck-manager = "securitycheck.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["securitycheck"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
