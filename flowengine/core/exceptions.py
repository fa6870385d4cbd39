"""Custom exceptions and error classification for the workflow engine."""

import traceback
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Categories of errors shared by exceptions, node failures and monitoring."""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    DATA_PROCESSING = "data_processing"
    CONFIGURATION = "configuration"
    SYSTEM = "system"
    UNKNOWN = "unknown"


# Substring rules, checked in order against the lowercased message.
_CLASSIFICATION_RULES = (
    (("econnreset", "etimedout", "socket hang up", "connection refused", "connection reset"),
     ErrorCategory.CONNECTION),
    (("rate limit", "quota exceeded", "too many requests"), ErrorCategory.RATE_LIMIT),
    (("validation failed", "invalid input"), ErrorCategory.VALIDATION),
    (("unauthorized", "forbidden"), ErrorCategory.AUTHENTICATION),
    (("timeout", "timed out"), ErrorCategory.TIMEOUT),
    (("data processing", "transform error"), ErrorCategory.DATA_PROCESSING),
)

_NON_RETRYABLE_CATEGORIES = {ErrorCategory.AUTHENTICATION, ErrorCategory.VALIDATION}

_SUGGESTIONS = {
    ErrorCategory.CONNECTION: "Check network connectivity and the availability of the remote service.",
    ErrorCategory.AUTHENTICATION: "Verify credentials and permissions configured for this node.",
    ErrorCategory.VALIDATION: "Check the node input and configuration for invalid values.",
    ErrorCategory.TIMEOUT: "Increase the node timeout or reduce the amount of work per call.",
    ErrorCategory.RATE_LIMIT: "Reduce request frequency or wait for the quota to reset.",
    ErrorCategory.DATA_PROCESSING: "Inspect the data passed between nodes for unexpected shapes.",
    ErrorCategory.CONFIGURATION: "Register an executor for this node kind or fix the node configuration.",
    ErrorCategory.SYSTEM: "Check the engine logs for details.",
    ErrorCategory.UNKNOWN: "Check the node logs for details and retry the workflow.",
}


def classify_error(message: Optional[str]) -> ErrorCategory:
    """Classify an error message into an :class:`ErrorCategory`.

    Args:
        message: Error message text, typically ``str(exc)``

    Returns:
        The first matching category, or ``UNKNOWN``
    """
    if not message:
        return ErrorCategory.UNKNOWN
    lowered = message.lower()
    for needles, category in _CLASSIFICATION_RULES:
        if any(needle in lowered for needle in needles):
            return category
    return ErrorCategory.UNKNOWN


def is_retryable_error(message: Optional[str], category: Optional[ErrorCategory] = None) -> bool:
    """Decide whether a failure with this message and category may be retried."""
    if message and "quota exceeded" in message.lower():
        return False
    category = category or classify_error(message)
    return category not in _NON_RETRYABLE_CATEGORIES


def error_suggestion(category) -> str:
    """User-facing hint for an error category."""
    try:
        category = ErrorCategory(category)
    except ValueError:
        category = ErrorCategory.UNKNOWN
    return _SUGGESTIONS[category]


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors."""

    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.SYSTEM,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)
        self.traceback_info = traceback.format_stack()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging and API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when graph validation fails."""

    status_code = 422

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        graph_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("error_code", "GRAPH_INVALID")
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.validation_errors = validation_errors or []
        if graph_id:
            self.add_context(graph_id=graph_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class NoEntryPointError(GraphValidationError):
    """Raised when a graph has no node to start traversal from."""

    def __init__(self, message: str = "No entry point found", **kwargs):
        kwargs.setdefault("error_code", "NO_ENTRY_POINT")
        super().__init__(message, **kwargs)


class DanglingEdgeError(GraphValidationError):
    """Raised when an edge references a node that does not exist."""

    def __init__(self, message: str, node_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", "DANGLING_EDGE")
        super().__init__(message, **kwargs)
        if node_id:
            self.add_context(node_id=node_id)


class NodeExecutionError(WorkflowEngineError):
    """Raised by executors when a node's unit of work fails.

    The engine converts it into a node failure; it never aborts the run.
    A ``category`` may be passed explicitly, otherwise it is classified
    from the message.
    """

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        run_id: Optional[str] = None,
        retryable: Optional[bool] = None,
        category: Optional[ErrorCategory] = None,
        **kwargs
    ):
        category = category or classify_error(message)
        if retryable is None:
            retryable = is_retryable_error(message, category)
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=category,
            recoverable=retryable,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if run_id:
            self.add_context(run_id=run_id)

    @property
    def retryable(self) -> bool:
        return self.recoverable


class ExecutionEngineError(WorkflowEngineError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("error_code", "ENGINE_ERROR")
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.SYSTEM,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)
        if workflow_id:
            self.add_context(workflow_id=workflow_id)


class IllegalStateTransitionError(ExecutionEngineError):
    """Raised when a node state machine is asked for a forbidden transition."""

    def __init__(self, node_id: str, from_state: str, to_state: str, **kwargs):
        kwargs.setdefault("error_code", "ILLEGAL_STATE_TRANSITION")
        super().__init__(
            f"Illegal transition for node {node_id}: {from_state} -> {to_state}",
            **kwargs
        )
        self.node_id = node_id
        self.from_state = from_state
        self.to_state = to_state
        self.add_context(node_id=node_id)
        self.add_details(from_state=from_state, to_state=to_state)


class RunNotFoundError(ExecutionEngineError):
    """Raised when a run ID is unknown to the engine."""

    status_code = 404

    def __init__(self, run_id: str, **kwargs):
        kwargs.setdefault("error_code", "RUN_NOT_FOUND")
        super().__init__(f"Execution run {run_id} not found", run_id=run_id, **kwargs)
        self.severity = ErrorSeverity.LOW


class ExecutorRegistryError(WorkflowEngineError):
    """Raised when executor registry operations fail."""

    status_code = 400

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if kind:
            self.add_context(kind=kind)
        if operation:
            self.add_context(operation=operation)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


class APIError(WorkflowEngineError):
    """Raised when API operations fail."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        endpoint: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.SYSTEM,
            **kwargs
        )
        self.status_code = status_code
        if endpoint:
            self.add_context(endpoint=endpoint)
        self.add_details(status_code=status_code)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
