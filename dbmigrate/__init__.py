"""Migration drivers for ClickHouse, MongoDB and Neo4j, with a driver registry."""

__version__ = "0.1.0"