"""Execution log and result recorder for a single run."""

import asyncio
import functools
import inspect
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..models.core import (
    WORKFLOW_LOG_ID,
    ExecutionRecord,
    ExecutionStatusEnum,
    LogEntry,
    LogLevel,
    NodeRunState,
    NodeRunStateEnum,
    RunError,
    utcnow,
)
from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class RunCallbacks:
    """Observer hooks for one run.

    Each hook may be a plain function or a coroutine function. Plain
    functions are called inline; exceptions they raise are logged and
    otherwise ignored. Coroutine functions are scheduled as tasks and never
    awaited by the engine.
    """
    on_node_state_change: Optional[Callable[[str, NodeRunStateEnum], Any]] = None
    on_log_appended: Optional[Callable[[LogEntry], Any]] = None
    on_run_finalized: Optional[Callable[[ExecutionRecord], Any]] = None


_LEVELS = {
    NodeRunStateEnum.FAILED: LogLevel.ERROR,
    NodeRunStateEnum.RETRYING: LogLevel.WARN,
    NodeRunStateEnum.CANCELED: LogLevel.WARN,
}


def _transition_message(label: str, snapshot: NodeRunState, from_state: NodeRunStateEnum,
                        data: Mapping[str, Any]) -> str:
    state = snapshot.state
    if state == NodeRunStateEnum.STARTING:
        return f"Starting execution of {label}"
    if state == NodeRunStateEnum.RUNNING:
        if from_state == NodeRunStateEnum.PAUSED:
            return f"Resumed {label}"
        if snapshot.attempt > 1:
            return f"Executing {label} (attempt {snapshot.attempt})"
        return f"Executing {label}"
    if state == NodeRunStateEnum.COMPLETED:
        return f"Completed execution of {label}"
    if state == NodeRunStateEnum.FAILED:
        message = snapshot.error.message if snapshot.error else "unknown error"
        return f"Error executing {label}: {message}"
    if state == NodeRunStateEnum.RETRYING:
        return f"Retrying {label} in {data.get('delay', 0):.2f}s"
    if state == NodeRunStateEnum.PAUSED:
        return f"Paused {label}"
    return f"Canceled {label}"


class ExecutionRecorder:
    """Collects the ordered log and per-node outcomes of one run.

    The recorder is passive: it observes state transitions and engine
    milestones and never influences scheduling. ``finalize`` freezes the
    collected data into an :class:`ExecutionRecord`; anything appended
    afterwards is dropped.
    """

    def __init__(
        self,
        run_id: str,
        workflow_id: str,
        callbacks: Optional[RunCallbacks] = None,
        labels: Optional[Dict[str, str]] = None,
    ):
        self.run_id = run_id
        self.workflow_id = workflow_id
        self.callbacks = callbacks or RunCallbacks()
        self.start_time: datetime = utcnow()
        self._labels = labels or {}
        self._entries: List[LogEntry] = []
        self._lock = threading.Lock()
        self._record: Optional[ExecutionRecord] = None
        self._callback_tasks: set = set()

    @property
    def is_finalized(self) -> bool:
        return self._record is not None

    @property
    def record(self) -> Optional[ExecutionRecord]:
        return self._record

    @property
    def logs(self) -> List[LogEntry]:
        with self._lock:
            return list(self._entries)

    def log(self, node_id: str, level: LogLevel, message: str,
            data: Optional[Dict[str, Any]] = None) -> Optional[LogEntry]:
        """Append a log entry.

        Returns:
            The appended entry, or None when the run is already finalized
        """
        with self._lock:
            if self._record is not None:
                logger.debug(f"Run {self.run_id} is finalized; dropping log entry for {node_id}: {message}")
                return None
            entry = LogEntry(
                sequence=len(self._entries),
                timestamp=utcnow(),
                node_id=node_id,
                level=level,
                message=message,
                data=data,
            )
            self._entries.append(entry)

        self._dispatch(self.callbacks.on_log_appended, entry)
        return entry

    def log_workflow(self, level: LogLevel, message: str,
                     data: Optional[Dict[str, Any]] = None) -> Optional[LogEntry]:
        return self.log(WORKFLOW_LOG_ID, level, message, data)

    def on_node_transition(self, snapshot: NodeRunState, from_state: NodeRunStateEnum,
                           data: Optional[Dict[str, Any]] = None) -> None:
        """State machine listener: one log entry per node transition."""
        if self.is_finalized:
            logger.debug(f"Run {self.run_id} is finalized; ignoring transition of {snapshot.node_id}")
            return

        payload: Dict[str, Any] = {
            "state": snapshot.state.value,
            "attempt": snapshot.attempt,
            "previous_state": from_state.value,
        }
        if data:
            payload.update(data)

        label = self._labels.get(snapshot.node_id) or snapshot.node_id
        self.log(
            snapshot.node_id,
            _LEVELS.get(snapshot.state, LogLevel.INFO),
            _transition_message(label, snapshot, from_state, payload),
            payload,
        )
        self._dispatch(self.callbacks.on_node_state_change, snapshot.node_id, snapshot.state)

    def finalize(
        self,
        status: ExecutionStatusEnum,
        node_states: Optional[Dict[str, NodeRunState]] = None,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[RunError] = None,
    ) -> ExecutionRecord:
        """Freeze the run into an :class:`ExecutionRecord`.

        Calling it again returns the record produced by the first call.
        """
        with self._lock:
            if self._record is not None:
                return self._record
            self._record = ExecutionRecord(
                id=self.run_id,
                workflow_id=self.workflow_id,
                status=status,
                start_time=self.start_time,
                end_time=utcnow(),
                logs=tuple(self._entries),
                node_states=dict(node_states or {}),
                output=dict(output or {}),
                error=error,
            )
            record = self._record

        self._dispatch(self.callbacks.on_run_finalized, record)
        return record

    def _dispatch(self, callback: Optional[Callable[..., Any]], *args: Any) -> None:
        if callback is None:
            return
        try:
            if inspect.iscoroutinefunction(callback) or inspect.iscoroutinefunction(
                getattr(callback, "__call__", None)
            ):
                task = asyncio.get_running_loop().create_task(callback(*args))
                self._callback_tasks.add(task)
                task.add_done_callback(functools.partial(self._callback_done, callback))
            else:
                callback(*args)
        except Exception as e:
            logger.warning(
                f"Callback {getattr(callback, '__name__', repr(callback))} failed for run {self.run_id}: {e}",
                exc_info=True,
            )

    def _callback_done(self, callback: Callable[..., Any], task: "asyncio.Task[Any]") -> None:
        self._callback_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                f"Callback {getattr(callback, '__name__', repr(callback))} failed for run {self.run_id}: {error}",
                exc_info=error,
            )
