"""Tests for the config driven and scripted executors."""

import asyncio

import pytest

from flowengine.core.builtin_executors import ConfigDrivenExecutor, ScriptedExecutor, build_default_registry
from flowengine.core.logging import clear_logging_context, set_logging_context
from flowengine.models.core import ExecutionStatusEnum, Failure, Node, NodeKind, RunOptions, Success


class TestConfigDrivenExecutor:
    """Behaviour controlled by node config."""

    @pytest.mark.asyncio
    async def test_configured_output(self):
        executor = ConfigDrivenExecutor(NodeKind.ACTION)

        outcome = await executor(Node(id="A", kind=NodeKind.ACTION, config={"output": {"sent": True}}), None)

        assert outcome == Success(output={"sent": True})

    @pytest.mark.asyncio
    async def test_trigger_default_output(self):
        executor = ConfigDrivenExecutor(NodeKind.TRIGGER)

        outcome = await executor(Node(id="T", kind=NodeKind.TRIGGER, config={"payload": {"id": 7}}), None)

        assert outcome.output == {"trigger": "T", "payload": {"id": 7}}

    @pytest.mark.asyncio
    async def test_fail_times_then_succeed(self):
        executor = ConfigDrivenExecutor(NodeKind.ACTION)
        node = Node(id="A", kind=NodeKind.ACTION, config={"fail_times": 2, "output": "done"})

        outcomes = [await executor(node, None) for _ in range(3)]

        assert [outcome.ok for outcome in outcomes] == [False, False, True]
        assert outcomes[0].error == "Injected failure in A"
        assert outcomes[2].output == "done"

        executor.reset()
        assert not (await executor(node, None)).ok

    @pytest.mark.asyncio
    async def test_injected_failure_classified(self):
        executor = ConfigDrivenExecutor(NodeKind.INTEGRATION)
        node = Node(id="I", kind=NodeKind.INTEGRATION,
                    config={"always_fail": True, "fail_message": "Rate limit reached", "retryable": False})

        outcome = await executor(node, None)

        assert isinstance(outcome, Failure)
        assert outcome.category == "rate_limit"
        assert not outcome.retryable

    @pytest.mark.asyncio
    async def test_condition_explicit_decision(self):
        executor = ConfigDrivenExecutor(NodeKind.CONDITION)

        outcome = await executor(Node(id="C", kind=NodeKind.CONDITION, config={"decision": "approve"}), {"x": 1})

        assert outcome.branch_decision == "approve"
        assert outcome.output == {"x": 1}

    @pytest.mark.asyncio
    async def test_condition_field_comparison(self):
        executor = ConfigDrivenExecutor(NodeKind.CONDITION)
        node = Node(id="C", kind=NodeKind.CONDITION, config={"field": "status", "equals": "ok"})

        assert (await executor(node, {"status": "ok"})).branch_decision is True
        assert (await executor(node, {"status": "bad"})).branch_decision is False

    @pytest.mark.asyncio
    async def test_condition_truthiness(self):
        executor = ConfigDrivenExecutor(NodeKind.CONDITION)
        node = Node(id="C", kind=NodeKind.CONDITION, config={"field": "items"})

        assert (await executor(node, {"items": [1]})).branch_decision is True
        assert (await executor(node, {"items": []})).branch_decision is False

    @pytest.mark.asyncio
    async def test_data_mapping(self):
        executor = ConfigDrivenExecutor(NodeKind.DATA)
        node = Node(id="D", kind=NodeKind.DATA,
                    config={"mapping": {"name": "full_name"}, "set": {"source": "crm"}})

        outcome = await executor(node, {"full_name": "Ada", "ignored": 1})

        assert outcome.output == {"name": "Ada", "source": "crm"}

    @pytest.mark.asyncio
    async def test_fail_times_counted_per_run(self):
        executor = ConfigDrivenExecutor(NodeKind.ACTION)
        node = Node(id="A", kind=NodeKind.ACTION, config={"fail_times": 1})

        results = []
        for run_id in ("run-1", "run-1", "run-2"):
            token = set_logging_context(run_id=run_id)
            try:
                results.append((await executor(node, None)).ok)
            finally:
                clear_logging_context(token)

        assert results == [False, True, False]

    @pytest.mark.asyncio
    async def test_tracked_runs_are_bounded(self):
        executor = ConfigDrivenExecutor(NodeKind.ACTION, max_tracked_runs=2)
        node = Node(id="A", kind=NodeKind.ACTION)

        for run_id in ("run-1", "run-2", "run-3"):
            token = set_logging_context(run_id=run_id)
            try:
                await executor(node, None)
            finally:
                clear_logging_context(token)

        assert list(executor._calls) == ["run-2", "run-3"]


class TestDefaultRegistry:
    """Registry covering every node kind."""

    @pytest.mark.asyncio
    async def test_every_kind_registered(self, default_registry):
        assert set(default_registry.list_executors()) == {kind.value for kind in NodeKind}

        outcome = await default_registry.execute(Node(id="X", kind=NodeKind.AGENT), "hi")
        assert outcome.output == {"node": "X", "kind": "agent", "input": "hi"}

    @pytest.mark.asyncio
    async def test_condition_on_non_object_input_fails_as_validation(self, default_registry):
        node = Node(id="C", kind=NodeKind.CONDITION, config={"field": "status"})

        outcome = await default_registry.execute(node, "not a dict")

        assert not outcome.ok
        assert outcome.category == "validation"
        assert not outcome.retryable

    @pytest.mark.asyncio
    async def test_data_on_non_object_input_fails(self, default_registry):
        node = Node(id="D", kind=NodeKind.DATA, config={"mapping": {"a": "b"}})

        outcome = await default_registry.execute(node, [1, 2])

        assert outcome.category == "data_processing"
        assert not outcome.retryable

    @pytest.mark.asyncio
    async def test_repeated_runs_of_a_graph_behave_the_same(self, engine, default_registry, build_graph):
        graph = build_graph(
            [("T", NodeKind.TRIGGER), ("A", NodeKind.ACTION)], [("T", "A")],
            configs={"A": {"fail_times": 1}},
        )
        options = RunOptions(base_delay=0.0, max_delay=0.0)

        first = await engine.run(graph, default_registry, options)
        second = await engine.run(graph, default_registry, options)
        concurrent = await asyncio.gather(
            engine.run(graph, default_registry, options),
            engine.run(graph, default_registry, options),
        )

        statuses = [record.status for record in (first, second, *concurrent)]
        assert statuses == [ExecutionStatusEnum.FAILED] * 4

        retried = await engine.run(graph, default_registry, options.model_copy(update={"default_max_retries": 1}))
        assert retried.status == ExecutionStatusEnum.COMPLETED
        assert retried.node_states["A"].attempt == 2

    def test_existing_registry_is_extended(self):
        registry = build_default_registry()
        try:
            assert build_default_registry(registry) is registry
        finally:
            registry.shutdown()


class TestScriptedExecutor:
    """Scripted results used throughout the engine tests."""

    @pytest.mark.asyncio
    async def test_script_replays_and_repeats_last(self):
        executor = ScriptedExecutor({"A": [Failure(error="boom"), "ok"]})
        node = Node(id="A")

        results = [await executor(node, i) for i in range(3)]

        assert results == [Failure(error="boom"), "ok", "ok"]
        assert executor.calls_for("A") == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_unscripted_nodes_use_default_output(self):
        executor = ScriptedExecutor()

        assert await executor(Node(id="B"), None) == {"node": "B"}
        assert executor.call_order() == ["B"]

    @pytest.mark.asyncio
    async def test_scripted_exception_raised(self):
        executor = ScriptedExecutor({"A": [RuntimeError("socket hang up")]})

        with pytest.raises(RuntimeError):
            await executor(Node(id="A"), None)

    @pytest.mark.asyncio
    async def test_registry_routes_every_kind(self):
        executor = ScriptedExecutor()
        registry = executor.registry()

        outcome = await registry.execute(Node(id="Q", kind=NodeKind.INTEGRATION))

        assert outcome.output == {"node": "Q"}
