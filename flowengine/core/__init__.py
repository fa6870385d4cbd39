"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    NoEntryPointError,
    DanglingEdgeError,
    NodeExecutionError,
    ExecutionEngineError,
    IllegalStateTransitionError,
    RunNotFoundError,
    ExecutorRegistryError,
    ConfigurationError,
    APIError,
)
from .logging import setup_logging, get_logger
from .graph_validation import find_entry_points, validate_graph, ensure_valid
from .executor_registry import NodeExecutorRegistry
from .execution_engine import ExecutionEngine, RunHandle, run_workflow
from .monitoring import MonitoringAggregator
from .recorder import RunCallbacks

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "NoEntryPointError",
    "DanglingEdgeError",
    "NodeExecutionError",
    "ExecutionEngineError",
    "IllegalStateTransitionError",
    "RunNotFoundError",
    "ExecutorRegistryError",
    "ConfigurationError",
    "APIError",
    "setup_logging",
    "get_logger",
    "find_entry_points",
    "validate_graph",
    "ensure_valid",
    "NodeExecutorRegistry",
    "ExecutionEngine",
    "RunHandle",
    "run_workflow",
    "MonitoringAggregator",
    "RunCallbacks",
]
