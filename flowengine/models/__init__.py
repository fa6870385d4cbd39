"""Data models for the workflow engine."""

from .core import (
    WORKFLOW_LOG_ID,
    BackoffStrategy,
    Edge,
    ExecutionRecord,
    ExecutionStatusEnum,
    Failure,
    Graph,
    GraphIssue,
    LogEntry,
    LogLevel,
    Node,
    NodeError,
    NodeKind,
    NodeOutcome,
    NodeRunState,
    NodeRunStateEnum,
    RetryPolicy,
    RunError,
    RunOptions,
    Success,
    ValidationResult,
)

__all__ = [
    "WORKFLOW_LOG_ID",
    "BackoffStrategy",
    "Edge",
    "ExecutionRecord",
    "ExecutionStatusEnum",
    "Failure",
    "Graph",
    "GraphIssue",
    "LogEntry",
    "LogLevel",
    "Node",
    "NodeError",
    "NodeKind",
    "NodeOutcome",
    "NodeRunState",
    "NodeRunStateEnum",
    "RetryPolicy",
    "RunError",
    "RunOptions",
    "Success",
    "ValidationResult",
]
