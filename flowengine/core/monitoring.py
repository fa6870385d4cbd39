"""Aggregation of finalized execution records into health and performance metrics."""

import threading
from collections import Counter, deque
from datetime import datetime
from typing import Deque, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..models.core import ExecutionRecord, ExecutionStatusEnum, NodeRunStateEnum
from .logging import get_logger

logger = get_logger(__name__)


HEALTHY_SUCCESS_RATE = 0.98
DEGRADED_SUCCESS_RATE = 0.90
GOOD_NODE_ERROR_RATE = 0.03
FAIR_NODE_ERROR_RATE = 0.08


def workflow_health(success_rate: float) -> str:
    """Health label for a success rate between 0 and 1."""
    if success_rate >= HEALTHY_SUCCESS_RATE:
        return "healthy"
    if success_rate >= DEGRADED_SUCCESS_RATE:
        return "degraded"
    return "error"


def node_health(error_rate: float) -> str:
    """Health label for a node error rate between 0 and 1."""
    if error_rate < GOOD_NODE_ERROR_RATE:
        return "good"
    if error_rate < FAIR_NODE_ERROR_RATE:
        return "fair"
    return "poor"


class NodeMetrics(BaseModel):
    """Attempt statistics of one node ID across runs."""
    node_id: str
    total_attempts: int = 0
    failed_attempts: int = 0
    error_rate: float = Field(0.0, description="Failed attempts / total attempts")
    health: str = "good"


class ErrorStat(BaseModel):
    message: str
    count: int


class WorkflowSummary(BaseModel):
    """Per-workflow run statistics."""
    workflow_id: str
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    canceled_runs: int = 0
    success_rate: float = Field(0.0, description="Completed runs / total runs")
    average_duration: float = Field(0.0, description="Mean run duration in seconds")
    last_run: Optional[datetime] = None
    last_status: Optional[ExecutionStatusEnum] = None
    health: str = "healthy"


class MonitoringSnapshot(BaseModel):
    """Point-in-time view of every aggregated metric."""
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    canceled_runs: int = 0
    success_rate: float = Field(0.0, description="Completed runs / total runs")
    average_execution_time: float = Field(0.0, description="Mean run duration in seconds")
    health: str = "healthy"
    node_metrics: Dict[str, NodeMetrics] = Field(default_factory=dict)
    most_frequent_errors: List[ErrorStat] = Field(default_factory=list)
    error_categories: Dict[str, int] = Field(default_factory=dict)
    retryable_errors: int = 0
    workflows: Dict[str, WorkflowSummary] = Field(default_factory=dict)


class _WorkflowStats:
    def __init__(self, history_limit: int):
        self.total = 0
        self.by_status: Counter = Counter()
        self.total_duration = 0.0
        self.last_run: Optional[datetime] = None
        self.last_status: Optional[ExecutionStatusEnum] = None
        self.history: Deque[ExecutionRecord] = deque(maxlen=history_limit)


class MonitoringAggregator:
    """Consumes finalized execution records and computes metrics.

    Thread-safe: records may be ingested from any thread while snapshots are
    being read.
    """

    def __init__(self, history_limit: int = 100):
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self.history_limit = history_limit
        self._lock = threading.RLock()
        self.reset()

    def reset(self) -> None:
        """Forget every ingested record."""
        with self._lock:
            self._total_runs = 0
            self._by_status: Counter = Counter()
            self._total_duration = 0.0
            self._node_attempts: Counter = Counter()
            self._node_failures: Counter = Counter()
            self._error_messages: Counter = Counter()
            self._error_categories: Counter = Counter()
            self._retryable_errors = 0
            self._workflows: Dict[str, _WorkflowStats] = {}
            self._records: Dict[str, ExecutionRecord] = {}

    def ingest(self, record: ExecutionRecord) -> None:
        """Add one finalized record to the aggregates."""
        if not record.status.is_terminal:
            raise ValueError(f"Cannot ingest run {record.id} with non-terminal status {record.status.value}")

        duration = record.duration or 0.0
        with self._lock:
            self._total_runs += 1
            self._by_status[record.status] += 1
            self._total_duration += duration

            for node_id, state in record.node_states.items():
                self._node_attempts[node_id] += state.attempt

            for entry in record.logs:
                if entry.state != NodeRunStateEnum.FAILED:
                    continue
                data = entry.data or {}
                self._node_failures[entry.node_id] += 1
                self._error_messages[data.get("error") or entry.message] += 1
                self._error_categories[data.get("category") or "unknown"] += 1
                if data.get("retryable"):
                    self._retryable_errors += 1

            if record.error is not None and record.status == ExecutionStatusEnum.FAILED:
                self._error_messages[record.error.message] += 1
                self._error_categories[record.error.category] += 1

            stats = self._workflows.get(record.workflow_id)
            if stats is None:
                stats = self._workflows[record.workflow_id] = _WorkflowStats(self.history_limit)
            stats.total += 1
            stats.by_status[record.status] += 1
            stats.total_duration += duration
            stats.last_run = record.end_time or record.start_time
            stats.last_status = record.status
            if len(stats.history) == stats.history.maxlen:
                evicted = stats.history[0]
                self._records.pop(evicted.id, None)
            stats.history.append(record)
            self._records[record.id] = record

        logger.debug(f"Ingested run {record.id} for workflow {record.workflow_id} ({record.status.value})")

    def get_record(self, run_id: str) -> Optional[ExecutionRecord]:
        """A recent record by run ID, if still within the history limit."""
        with self._lock:
            return self._records.get(run_id)

    def get_recent_executions(self, workflow_id: str, limit: Optional[int] = None) -> List[ExecutionRecord]:
        """Most recent records of a workflow, newest first."""
        with self._lock:
            stats = self._workflows.get(workflow_id)
            records = list(reversed(stats.history)) if stats else []
        return records[:limit] if limit else records

    @property
    def success_rate(self) -> float:
        with self._lock:
            return self._rate(self._by_status[ExecutionStatusEnum.COMPLETED], self._total_runs)

    @property
    def average_execution_time(self) -> float:
        with self._lock:
            if not self._total_runs:
                return 0.0
            return self._total_duration / self._total_runs

    def node_error_rate(self, node_id: str) -> float:
        with self._lock:
            return self._rate(self._node_failures[node_id], self._node_attempts[node_id])

    def get_node_metrics(self) -> Dict[str, NodeMetrics]:
        with self._lock:
            metrics = {}
            for node_id in sorted(set(self._node_attempts) | set(self._node_failures)):
                error_rate = self._rate(self._node_failures[node_id], self._node_attempts[node_id])
                metrics[node_id] = NodeMetrics(
                    node_id=node_id,
                    total_attempts=self._node_attempts[node_id],
                    failed_attempts=self._node_failures[node_id],
                    error_rate=error_rate,
                    health=node_health(error_rate),
                )
            return metrics

    def most_frequent_errors(self, limit: Optional[int] = None) -> List[ErrorStat]:
        """Error messages ordered by count, most frequent first."""
        with self._lock:
            ranked: List[Tuple[str, int]] = self._error_messages.most_common(limit)
        return [ErrorStat(message=message, count=count) for message, count in ranked]

    def get_error_stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "total_errors": sum(self._error_messages.values()),
                "retryable_errors": self._retryable_errors,
                "categories": dict(self._error_categories),
                "most_frequent": [stat.model_dump() for stat in self.most_frequent_errors(10)],
            }

    def get_workflow_summary(self, workflow_id: str) -> Optional[WorkflowSummary]:
        with self._lock:
            stats = self._workflows.get(workflow_id)
            if stats is None:
                return None
            return self._summarize(workflow_id, stats)

    def get_workflow_summaries(self) -> Dict[str, WorkflowSummary]:
        with self._lock:
            return {
                workflow_id: self._summarize(workflow_id, stats)
                for workflow_id, stats in self._workflows.items()
            }

    def snapshot(self, error_limit: Optional[int] = 10) -> MonitoringSnapshot:
        with self._lock:
            success_rate = self._rate(self._by_status[ExecutionStatusEnum.COMPLETED], self._total_runs)
            return MonitoringSnapshot(
                total_runs=self._total_runs,
                successful_runs=self._by_status[ExecutionStatusEnum.COMPLETED],
                failed_runs=self._by_status[ExecutionStatusEnum.FAILED],
                canceled_runs=self._by_status[ExecutionStatusEnum.CANCELED],
                success_rate=success_rate,
                average_execution_time=self.average_execution_time,
                health=workflow_health(success_rate) if self._total_runs else "healthy",
                node_metrics=self.get_node_metrics(),
                most_frequent_errors=self.most_frequent_errors(error_limit),
                error_categories=dict(self._error_categories),
                retryable_errors=self._retryable_errors,
                workflows=self.get_workflow_summaries(),
            )

    def _summarize(self, workflow_id: str, stats: _WorkflowStats) -> WorkflowSummary:
        success_rate = self._rate(stats.by_status[ExecutionStatusEnum.COMPLETED], stats.total)
        return WorkflowSummary(
            workflow_id=workflow_id,
            total_runs=stats.total,
            successful_runs=stats.by_status[ExecutionStatusEnum.COMPLETED],
            failed_runs=stats.by_status[ExecutionStatusEnum.FAILED],
            canceled_runs=stats.by_status[ExecutionStatusEnum.CANCELED],
            success_rate=success_rate,
            average_duration=stats.total_duration / stats.total if stats.total else 0.0,
            last_run=stats.last_run,
            last_status=stats.last_status,
            health=workflow_health(success_rate),
        )

    @staticmethod
    def _rate(part: int, total: int) -> float:
        if not total:
            return 0.0
        return part / total
