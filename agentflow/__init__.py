"""Workflow execution engine for agent graphs."""

__version__ = "0.1.0"
