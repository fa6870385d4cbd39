"""Per-node and per-workflow execution state machines."""

from datetime import datetime
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Union

from ..models.core import (
    ExecutionStatusEnum,
    NodeError,
    NodeRunState,
    NodeRunStateEnum,
    utcnow,
)
from .exceptions import ExecutionEngineError, IllegalStateTransitionError
from .logging import get_logger

logger = get_logger(__name__)


S = NodeRunStateEnum

NODE_TRANSITIONS: Dict[NodeRunStateEnum, FrozenSet[NodeRunStateEnum]] = {
    S.IDLE: frozenset({S.STARTING}),
    S.STARTING: frozenset({S.RUNNING, S.CANCELED}),
    S.RUNNING: frozenset({S.COMPLETED, S.FAILED, S.PAUSED, S.CANCELED}),
    S.FAILED: frozenset({S.RETRYING}),
    S.RETRYING: frozenset({S.RUNNING, S.PAUSED, S.CANCELED}),
    S.PAUSED: frozenset({S.RUNNING, S.CANCELED}),
    S.COMPLETED: frozenset(),
    S.CANCELED: frozenset(),
}

# States from which a cancel request moves the node to canceled.
CANCELABLE_STATES = frozenset({S.STARTING, S.RUNNING, S.RETRYING, S.PAUSED})

TransitionListener = Callable[[NodeRunState, NodeRunStateEnum, Optional[Dict[str, Any]]], None]


class NodeStateMachine:
    """Mutable state of one node within one run.

    Every accepted transition stamps a timestamp and is reported to the
    listener with the new snapshot, the previous state and optional event
    data. Rejected transitions raise :class:`IllegalStateTransitionError`
    and leave the state untouched.
    """

    def __init__(self, node_id: str, listener: Optional[TransitionListener] = None):
        self.node_id = node_id
        self.state = S.IDLE
        self.attempt = 0
        self.started_at: Optional[datetime] = None
        self.ended_at: Optional[datetime] = None
        self.updated_at: Optional[datetime] = None
        self.output: Any = None
        self.error: Optional[NodeError] = None
        self.branch_decision: Optional[Union[bool, str]] = None
        self._paused_from: Optional[NodeRunStateEnum] = None
        self._listener = listener

    def can_transition(self, to_state: NodeRunStateEnum) -> bool:
        return to_state in NODE_TRANSITIONS[self.state]

    def transition(self, to_state: NodeRunStateEnum, data: Optional[Dict[str, Any]] = None) -> NodeRunState:
        """Move to ``to_state``.

        Args:
            to_state: Target state
            data: Extra event data forwarded to the listener

        Returns:
            Snapshot after the transition

        Raises:
            IllegalStateTransitionError: If the transition is not allowed
        """
        from_state = self.state
        if not self.can_transition(to_state):
            raise IllegalStateTransitionError(self.node_id, from_state.value, to_state.value)

        now = utcnow()
        if to_state == S.STARTING:
            self.started_at = now
        elif to_state == S.RUNNING:
            resumed_from = self._paused_from if from_state == S.PAUSED else None
            if from_state in (S.STARTING, S.RETRYING) or resumed_from == S.RETRYING:
                self.attempt += 1
            self._paused_from = None
        elif to_state == S.PAUSED:
            self._paused_from = from_state
        elif to_state == S.RETRYING:
            self.ended_at = None

        if to_state in (S.COMPLETED, S.FAILED, S.CANCELED):
            self.ended_at = now

        self.state = to_state
        self.updated_at = now
        logger.debug(f"Node {self.node_id}: {from_state.value} -> {to_state.value} (attempt {self.attempt})")

        snapshot = self.snapshot()
        if self._listener is not None:
            self._listener(snapshot, from_state, data)
        return snapshot

    def start(self) -> NodeRunState:
        return self.transition(S.STARTING)

    def run(self) -> NodeRunState:
        return self.transition(S.RUNNING)

    def complete(self, output: Any, branch_decision: Optional[Union[bool, str]] = None,
                 data: Optional[Dict[str, Any]] = None) -> NodeRunState:
        """Record a successful attempt and move to completed."""
        if not self.can_transition(S.COMPLETED):
            raise IllegalStateTransitionError(self.node_id, self.state.value, S.COMPLETED.value)
        self.output = output
        self.error = None
        self.branch_decision = branch_decision
        return self.transition(S.COMPLETED, data)

    def fail(self, error: NodeError, data: Optional[Dict[str, Any]] = None) -> NodeRunState:
        """Record a failed attempt and move to failed."""
        if not self.can_transition(S.FAILED):
            raise IllegalStateTransitionError(self.node_id, self.state.value, S.FAILED.value)
        self.error = error
        return self.transition(S.FAILED, data)

    def retry(self, data: Optional[Dict[str, Any]] = None) -> NodeRunState:
        return self.transition(S.RETRYING, data)

    def pause(self) -> NodeRunState:
        return self.transition(S.PAUSED)

    def resume(self) -> NodeRunState:
        if self.state != S.PAUSED:
            raise IllegalStateTransitionError(self.node_id, self.state.value, S.RUNNING.value)
        return self.transition(S.RUNNING)

    def cancel(self) -> Optional[NodeRunState]:
        """Cancel an in-flight node. Idle and terminal nodes are left untouched."""
        if self.state not in CANCELABLE_STATES:
            return None
        return self.transition(S.CANCELED)

    @property
    def is_terminal(self) -> bool:
        return self.state in (S.COMPLETED, S.CANCELED, S.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return self.state in CANCELABLE_STATES

    def snapshot(self) -> NodeRunState:
        """Frozen copy of the current state."""
        return NodeRunState(
            node_id=self.node_id,
            state=self.state,
            attempt=self.attempt,
            started_at=self.started_at,
            ended_at=self.ended_at,
            output=self.output,
            error=self.error,
            branch_decision=self.branch_decision,
        )


E = ExecutionStatusEnum

WORKFLOW_TRANSITIONS: Dict[ExecutionStatusEnum, FrozenSet[ExecutionStatusEnum]] = {
    E.PENDING: frozenset({E.RUNNING, E.FAILED, E.CANCELED}),
    E.RUNNING: frozenset({E.COMPLETED, E.FAILED, E.CANCELED}),
    E.COMPLETED: frozenset(),
    E.FAILED: frozenset(),
    E.CANCELED: frozenset(),
}


class WorkflowStateMachine:
    """Aggregate status of one run: pending -> running -> completed | failed | canceled."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.status = E.PENDING

    def transition(self, to_status: ExecutionStatusEnum) -> None:
        if to_status not in WORKFLOW_TRANSITIONS[self.status]:
            raise ExecutionEngineError(
                f"Illegal workflow transition: {self.status.value} -> {to_status.value}",
                run_id=self.run_id,
                error_code="ILLEGAL_STATE_TRANSITION",
            )
        self.status = to_status

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @staticmethod
    def aggregate(nodes: Iterable[NodeStateMachine]) -> ExecutionStatusEnum:
        """Status of a naturally finished run.

        Failed if any visited node ended failed; nodes that were never
        visited stay idle and do not count.
        """
        if any(node.state == S.FAILED for node in nodes):
            return E.FAILED
        return E.COMPLETED
