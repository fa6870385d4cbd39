"""Core Pydantic models for the workflow execution engine."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


WORKFLOW_LOG_ID = "workflow"


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for every engine timestamp."""
    return datetime.now(timezone.utc)


class NodeKind(str, Enum):
    """Enumeration of node kinds a workflow graph may contain."""
    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    DATA = "data"
    INTEGRATION = "integration"
    AGENT = "agent"
    DEFAULT = "default"


class NodeRunStateEnum(str, Enum):
    """Per-node execution states."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    PAUSED = "paused"
    CANCELED = "canceled"


class ExecutionStatusEnum(str, Enum):
    """Enumeration of workflow execution statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatusEnum.COMPLETED,
            ExecutionStatusEnum.FAILED,
            ExecutionStatusEnum.CANCELED,
        )


class LogLevel(str, Enum):
    """Severity of an execution log entry."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"


class BackoffStrategy(str, Enum):
    """Delay growth between retry attempts."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class Node(BaseModel):
    """Definition of a workflow node."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the node")
    kind: NodeKind = Field(NodeKind.DEFAULT, description="Kind of work the node performs")
    config: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific configuration")
    label: str = Field("", description="Display label")

    @field_validator('id')
    @classmethod
    def validate_id(cls, id_value):
        """Ensure node ID is not blank."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        return id_value.strip()

    @property
    def display_name(self) -> str:
        return self.label or self.id


class Edge(BaseModel):
    """Directed edge between two workflow nodes."""
    model_config = ConfigDict(frozen=True)

    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    branch_tag: Optional[str] = Field(None, description="Branch tag for condition sources")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        """Ensure node IDs are valid."""
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()


class Graph(BaseModel):
    """Complete definition of a workflow graph.

    Edges are kept in declaration order; sequential traversal follows it.
    Edge endpoints are deliberately not checked here so that
    :func:`flowengine.core.graph_validation.validate_graph` can report
    dangling edges as a validation result instead of a construction error.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Workflow identifier")
    name: str = Field("", description="Name of the workflow")
    nodes: List[Node] = Field(default_factory=list, description="Nodes in the graph")
    edges: List[Edge] = Field(default_factory=list, description="Edges connecting nodes")

    @field_validator('nodes')
    @classmethod
    def validate_unique_node_ids(cls, nodes):
        """Ensure all node IDs are unique."""
        node_ids = [node.id for node in nodes]
        if len(node_ids) != len(set(node_ids)):
            raise ValueError("All node IDs must be unique")
        return nodes

    @property
    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        """Outgoing edges of a node, in declaration order."""
        return [edge for edge in self.edges if edge.source == node_id]


class Success(BaseModel):
    """Successful node outcome."""
    model_config = ConfigDict(frozen=True)

    output: Any = Field(None, description="Result payload")
    branch_decision: Optional[Union[bool, str]] = Field(
        None, description="Branch selected by a condition node"
    )

    @property
    def ok(self) -> bool:
        return True


class Failure(BaseModel):
    """Failed node outcome."""
    model_config = ConfigDict(frozen=True)

    error: str = Field(..., description="Error message")
    category: Optional[str] = Field(None, description="Error category")
    retryable: bool = Field(True, description="Whether the retry policy may retry this failure")

    @property
    def ok(self) -> bool:
        return False


NodeOutcome = Union[Success, Failure]


class NodeError(BaseModel):
    """Error recorded against a node run."""
    model_config = ConfigDict(frozen=True)

    message: str
    category: str = "unknown"
    retryable: bool = True


class NodeRunState(BaseModel):
    """Snapshot of one node's execution within one run."""
    model_config = ConfigDict(frozen=True)

    node_id: str = Field(..., description="ID of the node")
    state: NodeRunStateEnum = Field(NodeRunStateEnum.IDLE, description="Current state")
    attempt: int = Field(0, description="Number of times the node entered running")
    started_at: Optional[datetime] = Field(None, description="When the node left idle")
    ended_at: Optional[datetime] = Field(None, description="When the node reached a terminal state")
    output: Any = Field(None, description="Output of the last successful attempt")
    error: Optional[NodeError] = Field(None, description="Error of the last failed attempt")
    branch_decision: Optional[Union[bool, str]] = Field(None, description="Condition decision")


class LogEntry(BaseModel):
    """Log entry for workflow execution events."""
    model_config = ConfigDict(frozen=True)

    sequence: int = Field(..., description="Position of the entry within the run")
    timestamp: datetime = Field(default_factory=utcnow, description="Timestamp of the log entry")
    node_id: str = Field(..., description="ID of the node, or 'workflow' for engine events")
    level: LogLevel = Field(LogLevel.INFO, description="Severity")
    message: str = Field(..., description="Log message")
    data: Optional[Dict[str, Any]] = Field(None, description="Structured event data")

    @property
    def state(self) -> Optional[NodeRunStateEnum]:
        """Node state carried by a transition entry, if any."""
        if self.data and "state" in self.data:
            return NodeRunStateEnum(self.data["state"])
        return None


class RunError(BaseModel):
    """Workflow-level error attached to an execution record."""
    model_config = ConfigDict(frozen=True)

    code: str = Field(..., description="Machine readable error code")
    message: str = Field(..., description="Error message")
    category: str = Field("system", description="Error category")


class ExecutionRecord(BaseModel):
    """Frozen outcome of one workflow run."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique identifier for the execution run")
    workflow_id: str = Field(..., description="ID of the executed workflow")
    status: ExecutionStatusEnum = Field(..., description="Aggregate execution status")
    start_time: datetime = Field(..., description="Timestamp when execution started")
    end_time: Optional[datetime] = Field(None, description="Timestamp when execution finished")
    logs: Tuple[LogEntry, ...] = Field(default_factory=tuple, description="Ordered execution log")
    node_states: Dict[str, NodeRunState] = Field(default_factory=dict, description="Per-node states")
    output: Dict[str, Any] = Field(default_factory=dict, description="Outputs of terminal nodes")
    error: Optional[RunError] = Field(None, description="Workflow-level error")

    @property
    def duration(self) -> Optional[float]:
        """Wall-clock duration in seconds."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    @property
    def completed_nodes(self) -> List[str]:
        return [
            node_id for node_id, state in self.node_states.items()
            if state.state == NodeRunStateEnum.COMPLETED
        ]

    @property
    def failed_nodes(self) -> List[str]:
        return [
            node_id for node_id, state in self.node_states.items()
            if state.state == NodeRunStateEnum.FAILED
        ]

    def logs_for(self, node_id: str) -> List[LogEntry]:
        """Log entries of a single node, in order."""
        return [entry for entry in self.logs if entry.node_id == node_id]


class RetryPolicy(BaseModel):
    """Retry budget and backoff for one node kind."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(0, ge=0, description="Retries after the first attempt")
    backoff: BackoffStrategy = Field(BackoffStrategy.FIXED, description="Backoff strategy")
    base_delay: float = Field(1.0, ge=0, description="Base delay in seconds")
    max_delay: float = Field(30.0, ge=0, description="Upper bound on any delay in seconds")
    jitter: float = Field(0.0, ge=0, le=1, description="Fractional +/- jitter applied to delays")


class RunOptions(BaseModel):
    """Per-run engine options."""

    parallel: bool = Field(False, description="Execute sibling nodes concurrently")
    max_parallelism: int = Field(10, ge=1, description="Upper bound on concurrent node executions")
    default_max_retries: int = Field(0, ge=0, description="Retry budget for kinds without a policy")
    backoff_strategy: BackoffStrategy = Field(BackoffStrategy.FIXED, description="Default backoff")
    base_delay: float = Field(1.0, ge=0, description="Default base delay in seconds")
    max_delay: float = Field(30.0, ge=0, description="Default maximum delay in seconds")
    node_timeout: Optional[float] = Field(None, gt=0, description="Per-node executor timeout in seconds")
    retry_policies: Dict[NodeKind, RetryPolicy] = Field(
        default_factory=dict, description="Retry policy overrides per node kind"
    )

    def policy_for(self, kind: NodeKind) -> RetryPolicy:
        """Retry policy applying to a node kind."""
        policy = self.retry_policies.get(kind)
        if policy is not None:
            return policy
        return RetryPolicy(
            max_retries=self.default_max_retries,
            backoff=self.backoff_strategy,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )


class GraphIssue(BaseModel):
    """One problem found while validating a graph."""
    code: str = Field(..., description="Issue code")
    message: str = Field(..., description="Human readable description")
    node_id: Optional[str] = Field(None, description="Node the issue refers to")


class ValidationResult(BaseModel):
    """Result of graph validation."""
    is_valid: bool = Field(..., description="Whether the graph is valid")
    errors: List[GraphIssue] = Field(default_factory=list, description="Validation errors")
    warnings: List[str] = Field(default_factory=list, description="Validation warnings")
    entry_points: List[str] = Field(default_factory=list, description="Entry point node IDs")

    def raise_for_errors(self) -> None:
        """Raise the first validation error as a GraphValidationError subclass."""
        if self.is_valid:
            return
        from ..core.exceptions import DanglingEdgeError, GraphValidationError, NoEntryPointError

        issue = self.errors[0]
        messages = [error.message for error in self.errors]
        if issue.code == "DANGLING_EDGE":
            raise DanglingEdgeError(issue.message, node_id=issue.node_id, validation_errors=messages)
        if issue.code == "NO_ENTRY_POINT":
            raise NoEntryPointError(issue.message, validation_errors=messages)
        raise GraphValidationError(issue.message, validation_errors=messages)
