"""Workflow execution engine for visual workflow graphs."""

__version__ = "1.0.0"
