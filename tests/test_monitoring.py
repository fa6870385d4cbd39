"""Tests for the monitoring aggregator."""

from datetime import timedelta

import pytest

from flowengine.core.monitoring import MonitoringAggregator, node_health, workflow_health
from flowengine.models.core import (
    ExecutionRecord,
    ExecutionStatusEnum,
    LogEntry,
    LogLevel,
    NodeRunState,
    NodeRunStateEnum,
    RunError,
    utcnow,
)


def make_record(run_id, status=ExecutionStatusEnum.COMPLETED, workflow_id="wf", duration=1.0,
                attempts=None, failures=(), error=None):
    """Build a finalized record with ``attempts`` per node and failed log entries."""
    start = utcnow()
    attempts = attempts or {"A": 1}
    logs = [
        LogEntry(
            sequence=i,
            node_id=node_id,
            level=LogLevel.ERROR,
            message=f"Error executing {node_id}: {message}",
            data={"state": "failed", "error": message, "category": category, "retryable": True},
        )
        for i, (node_id, message, category) in enumerate(failures)
    ]
    return ExecutionRecord(
        id=run_id,
        workflow_id=workflow_id,
        status=status,
        start_time=start,
        end_time=start + timedelta(seconds=duration),
        logs=tuple(logs),
        node_states={
            node_id: NodeRunState(node_id=node_id, state=NodeRunStateEnum.COMPLETED, attempt=count)
            for node_id, count in attempts.items()
        },
        error=error,
    )


class TestHealthThresholds:
    """Health labels."""

    @pytest.mark.parametrize("rate, label", [
        (1.0, "healthy"), (0.98, "healthy"), (0.979, "degraded"), (0.90, "degraded"), (0.899, "error"),
    ])
    def test_workflow_health(self, rate, label):
        assert workflow_health(rate) == label

    @pytest.mark.parametrize("rate, label", [
        (0.0, "good"), (0.029, "good"), (0.03, "fair"), (0.079, "fair"), (0.08, "poor"),
    ])
    def test_node_health(self, rate, label):
        assert node_health(rate) == label


class TestMonitoringAggregator:
    """Aggregation of finalized records."""

    def test_empty_aggregator(self, monitor):
        snapshot = monitor.snapshot()

        assert snapshot.total_runs == 0
        assert snapshot.success_rate == 0.0
        assert snapshot.health == "healthy"
        assert monitor.average_execution_time == 0.0

    def test_success_rate_and_average_duration(self, monitor):
        monitor.ingest(make_record("r1", duration=1.0))
        monitor.ingest(make_record("r2", duration=3.0))
        monitor.ingest(make_record("r3", status=ExecutionStatusEnum.FAILED, duration=2.0))
        monitor.ingest(make_record("r4", status=ExecutionStatusEnum.CANCELED, duration=2.0))

        assert monitor.success_rate == 0.5
        assert monitor.average_execution_time == pytest.approx(2.0)
        snapshot = monitor.snapshot()
        assert (snapshot.successful_runs, snapshot.failed_runs, snapshot.canceled_runs) == (2, 1, 1)
        assert snapshot.health == "error"

    def test_node_error_rate_counts_attempts(self, monitor):
        monitor.ingest(make_record("r1", attempts={"A": 3, "B": 1},
                                   failures=[("A", "boom", "unknown"), ("A", "boom", "unknown")]))
        monitor.ingest(make_record("r2", attempts={"A": 1, "B": 1}))

        assert monitor.node_error_rate("A") == 0.5
        assert monitor.node_error_rate("B") == 0.0
        metrics = monitor.get_node_metrics()
        assert metrics["A"].total_attempts == 4
        assert metrics["A"].failed_attempts == 2
        assert metrics["A"].health == "poor"
        assert metrics["B"].health == "good"

    def test_most_frequent_errors(self, monitor):
        monitor.ingest(make_record("r1", failures=[("A", "timeout", "timeout"), ("B", "ECONNRESET", "connection")]))
        monitor.ingest(make_record("r2", failures=[("A", "timeout", "timeout")]))

        errors = monitor.most_frequent_errors()

        assert [(e.message, e.count) for e in errors] == [("timeout", 2), ("ECONNRESET", 1)]
        stats = monitor.get_error_stats()
        assert stats["total_errors"] == 3
        assert stats["retryable_errors"] == 3
        assert stats["categories"] == {"timeout": 2, "connection": 1}

    def test_run_level_error_counted_for_failed_runs_only(self, monitor):
        monitor.ingest(make_record(
            "r1", status=ExecutionStatusEnum.FAILED,
            error=RunError(code="DANGLING_EDGE", message="bad edge", category="validation"),
        ))
        monitor.ingest(make_record(
            "r2", status=ExecutionStatusEnum.CANCELED,
            error=RunError(code="CANCELED", message="Workflow execution canceled"),
        ))

        assert [e.message for e in monitor.most_frequent_errors()] == ["bad edge"]
        assert monitor.get_error_stats()["categories"] == {"validation": 1}

    def test_non_terminal_record_rejected(self, monitor):
        with pytest.raises(ValueError):
            monitor.ingest(make_record("r1", status=ExecutionStatusEnum.RUNNING))

    def test_workflow_summaries(self, monitor):
        monitor.ingest(make_record("r1", workflow_id="a"))
        monitor.ingest(make_record("r2", workflow_id="a", status=ExecutionStatusEnum.FAILED))
        monitor.ingest(make_record("r3", workflow_id="b"))

        summary = monitor.get_workflow_summary("a")
        assert summary.total_runs == 2
        assert summary.success_rate == 0.5
        assert summary.last_status == ExecutionStatusEnum.FAILED
        assert summary.health == "error"
        assert set(monitor.get_workflow_summaries()) == {"a", "b"}
        assert monitor.get_workflow_summary("missing") is None

    def test_recent_executions_newest_first_and_bounded(self):
        monitor = MonitoringAggregator(history_limit=2)
        for run_id in ("r1", "r2", "r3"):
            monitor.ingest(make_record(run_id))

        assert [r.id for r in monitor.get_recent_executions("wf")] == ["r3", "r2"]
        assert [r.id for r in monitor.get_recent_executions("wf", limit=1)] == ["r3"]
        assert monitor.get_record("r1") is None
        assert monitor.get_record("r3").id == "r3"
        assert monitor.snapshot().total_runs == 3

    def test_reset(self, monitor):
        monitor.ingest(make_record("r1"))
        monitor.reset()

        assert monitor.snapshot().total_runs == 0
        assert monitor.get_record("r1") is None

    def test_history_limit_must_be_positive(self):
        with pytest.raises(ValueError):
            MonitoringAggregator(history_limit=0)
