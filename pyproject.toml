[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dbmigrate"
version = "0.1.0"
description = "Database drivers for schema migrations: version tracking, locking and multi-statement execution"
requires-python = ">=3.10"
keywords = ["migrations", "database", "schema", "clickhouse", "mongodb", "neo4j"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Database",
]
dependencies = [
    "pymongo",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["dbmigrate"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
