"""Tests for the node executor registry."""

import asyncio

import pytest

from flowengine.core.exceptions import ExecutorRegistryError, NodeExecutionError
from flowengine.core.executor_registry import (
    NodeExecutorRegistry,
    coerce_outcome,
    failure_from_exception,
    is_async_callable,
)
from flowengine.models.core import Failure, Node, NodeKind, Success


def sync_executor(node, input_data):
    """Echo executor running on the thread pool."""
    return {"node": node.id, "input": input_data}


async def async_executor(node, input_data):
    await asyncio.sleep(0)
    return Success(output=f"async:{node.id}")


@pytest.fixture
def registry():
    registry = NodeExecutorRegistry(max_workers=2)
    yield registry
    registry.shutdown()


class TestRegistration:
    """Registering and looking up executors."""

    def test_register_and_get(self, registry):
        registry.register(NodeKind.ACTION, sync_executor, "Echo")

        assert registry.has_executor(NodeKind.ACTION)
        assert registry.has_executor("action")
        assert registry.get_executor(NodeKind.ACTION) is sync_executor
        assert registry.list_executors() == {"action": "Echo"}

    def test_duplicate_registration_rejected(self, registry):
        registry.register(NodeKind.ACTION, sync_executor)

        with pytest.raises(ExecutorRegistryError) as exc_info:
            registry.register(NodeKind.ACTION, async_executor)

        assert "already registered" in exc_info.value.message
        assert registry.get_executor(NodeKind.ACTION) is sync_executor

    def test_replace_allows_overwrite(self, registry):
        registry.register(NodeKind.ACTION, sync_executor)
        registry.register(NodeKind.ACTION, async_executor, replace=True)

        assert registry.get_executor(NodeKind.ACTION) is async_executor

    def test_executor_must_accept_node_and_input(self, registry):
        with pytest.raises(ExecutorRegistryError):
            registry.register(NodeKind.ACTION, lambda node: None)
        with pytest.raises(ExecutorRegistryError):
            registry.register(NodeKind.ACTION, "not callable")

    def test_unregister(self, registry):
        registry.register(NodeKind.ACTION, sync_executor)

        assert registry.unregister(NodeKind.ACTION)
        assert not registry.unregister(NodeKind.ACTION)
        assert not registry.has_executor(NodeKind.ACTION)

    def test_missing_executor_raises(self, registry):
        with pytest.raises(ExecutorRegistryError):
            registry.get_executor(NodeKind.AGENT)

    def test_fallback_used_for_unregistered_kinds(self, registry):
        registry.set_fallback(async_executor)

        assert registry.get_executor(NodeKind.AGENT) is async_executor
        assert not registry.has_executor(NodeKind.AGENT)

    def test_custom_kind_strings(self, registry):
        registry.register("webhook", sync_executor)

        assert registry.has_executor("webhook")
        with pytest.raises(ExecutorRegistryError):
            registry.register("  ", sync_executor)


class TestExecute:
    """Uniform execution and outcome normalization."""

    @pytest.mark.asyncio
    async def test_sync_executor_runs_in_thread_pool(self, registry):
        registry.register(NodeKind.ACTION, sync_executor)

        outcome = await registry.execute(Node(id="A", kind=NodeKind.ACTION), {"x": 1})

        assert outcome.ok
        assert outcome.output == {"node": "A", "input": {"x": 1}}

    @pytest.mark.asyncio
    async def test_async_executor(self, registry):
        registry.register(NodeKind.ACTION, async_executor)

        outcome = await registry.execute(Node(id="A", kind=NodeKind.ACTION))

        assert outcome == Success(output="async:A")

    @pytest.mark.asyncio
    async def test_missing_executor_is_configuration_failure(self, registry):
        outcome = await registry.execute(Node(id="A", kind=NodeKind.AGENT))

        assert not outcome.ok
        assert outcome.category == "configuration"
        assert not outcome.retryable

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self, registry):
        def exploding(node, input_data):
            raise RuntimeError("ECONNRESET while calling upstream")

        registry.register(NodeKind.INTEGRATION, exploding)

        outcome = await registry.execute(Node(id="I", kind=NodeKind.INTEGRATION))

        assert isinstance(outcome, Failure)
        assert outcome.error == "ECONNRESET while calling upstream"
        assert outcome.category == "connection"
        assert outcome.retryable

    @pytest.mark.asyncio
    async def test_returned_failure_is_classified(self, registry):
        async def rejecting(node, input_data):
            return Failure(error="Validation failed: missing field", retryable=False)

        registry.register(NodeKind.DATA, rejecting)

        outcome = await registry.execute(Node(id="D", kind=NodeKind.DATA))

        assert outcome.category == "validation"
        assert not outcome.retryable


class TestOutcomeHelpers:
    """Conversion helpers shared with the engine."""

    def test_node_execution_error_keeps_its_classification(self):
        failure = failure_from_exception(NodeExecutionError("Unauthorized", node_id="A"))

        assert failure.category == "authentication"
        assert not failure.retryable

    def test_explicit_retryable_overrides_classification(self):
        failure = failure_from_exception(NodeExecutionError("Unauthorized", retryable=True))

        assert failure.retryable

    def test_quota_exceeded_is_not_retryable(self):
        failure = failure_from_exception(RuntimeError("Quota exceeded for project"))

        assert failure.category == "rate_limit"
        assert not failure.retryable

    def test_timeout_exception(self):
        failure = failure_from_exception(asyncio.TimeoutError())

        assert failure.category == "timeout"
        assert failure.retryable

    def test_plain_value_is_success(self):
        assert coerce_outcome(42) == Success(output=42)
        assert coerce_outcome(None) == Success(output=None)

    def test_async_callable_objects_detected(self):
        class AsyncCallable:
            async def __call__(self, node, input_data):
                return None

        assert is_async_callable(async_executor)
        assert is_async_callable(AsyncCallable())
        assert not is_async_callable(sync_executor)
