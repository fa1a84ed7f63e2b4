"""Kubernetes operator for Oracle Autonomous Databases and pluggable databases."""

__version__ = "0.3.0"
