"""Deterministic executors for every node kind.

The default executors are driven entirely by node ``config``:

- ``output``: value returned instead of the kind's default output
- ``delay``: seconds to wait before answering
- ``always_fail``: fail every attempt
- ``fail_times``: fail the first N attempts of the node, then succeed
- ``fail_message``: message used for injected failures
- ``retryable``: whether injected failures may be retried (default True)
- ``decision``: branch decision of a condition node

Condition nodes without a ``decision`` look up ``field`` in a dict input and
compare it with ``equals`` when given, otherwise use the value's truthiness.
Data nodes apply ``mapping`` (output key to input key) and ``set`` (constant
keys) to a dict input.
"""

import asyncio
import threading
from collections import Counter, OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.core import Failure, Node, NodeKind, NodeOutcome, Success
from .exceptions import NodeExecutionError, classify_error
from .executor_registry import NodeExecutorRegistry
from .logging import get_logger, get_logging_context

logger = get_logger(__name__)


_MISSING = object()


class ConfigDrivenExecutor:
    """Executor for one node kind whose behaviour comes from node config.

    Injected failure counts (``fail_times``) are tracked per run and node ID,
    so every run of a graph fails the same way. The run comes from the
    ``run_id`` of the logging context; calls made outside a run share one
    counter until :meth:`reset`.
    """

    def __init__(self, kind: NodeKind, max_tracked_runs: int = 256):
        self.kind = kind
        self.max_tracked_runs = max_tracked_runs
        self._calls: "OrderedDict[Optional[str], Counter]" = OrderedDict()
        self._lock = threading.Lock()

    def reset(self) -> None:
        with self._lock:
            self._calls.clear()

    def _next_call_number(self, node_id: str) -> int:
        run_id = get_logging_context().get("run_id")
        with self._lock:
            counts = self._calls.get(run_id)
            if counts is None:
                counts = self._calls[run_id] = Counter()
                while len(self._calls) > self.max_tracked_runs:
                    self._calls.popitem(last=False)
            counts[node_id] += 1
            return counts[node_id]

    async def __call__(self, node: Node, input_data: Any) -> NodeOutcome:
        config = node.config
        delay = float(config.get("delay", 0) or 0)
        if delay > 0:
            await asyncio.sleep(delay)

        call_number = self._next_call_number(node.id)

        fail_times = int(config.get("fail_times", 0) or 0)
        if config.get("always_fail") or call_number <= fail_times:
            message = config.get("fail_message") or f"Injected failure in {node.display_name}"
            return Failure(
                error=message,
                category=classify_error(message).value,
                retryable=bool(config.get("retryable", True)),
            )

        if self.kind == NodeKind.CONDITION:
            return self._evaluate_condition(node, input_data)

        output = config.get("output", _MISSING)
        if output is _MISSING:
            output = self._default_output(node, input_data)
        return Success(output=output)

    def _evaluate_condition(self, node: Node, input_data: Any) -> Success:
        config = node.config
        output = config.get("output", input_data)
        if "decision" in config:
            return Success(output=output, branch_decision=config["decision"])

        value = input_data
        if "field" in config:
            if not isinstance(input_data, dict):
                raise NodeExecutionError(
                    f"Invalid input: condition {node.display_name} expects an object with '{config['field']}'",
                    node_id=node.id,
                )
            value = input_data.get(config["field"])
        if "equals" in config:
            return Success(output=output, branch_decision=value == config["equals"])
        return Success(output=output, branch_decision=bool(value))

    def _default_output(self, node: Node, input_data: Any) -> Any:
        if self.kind == NodeKind.TRIGGER:
            return {"trigger": node.id, "payload": node.config.get("payload")}
        if self.kind == NodeKind.DATA:
            return self._transform(node, input_data)
        return {"node": node.id, "kind": self.kind.value, "input": input_data}

    @staticmethod
    def _transform(node: Node, input_data: Any) -> Any:
        mapping = node.config.get("mapping")
        constants = node.config.get("set")
        if mapping is None and constants is None:
            return input_data
        if input_data is not None and not isinstance(input_data, dict):
            raise NodeExecutionError(
                f"Data processing failed in {node.display_name}: expected an object input",
                node_id=node.id,
                retryable=False,
            )
        source = input_data or {}
        result: Dict[str, Any] = {}
        if mapping is None:
            result.update(source)
        else:
            for target_key, source_key in mapping.items():
                result[target_key] = source.get(source_key)
        if constants:
            result.update(constants)
        return result


def build_default_registry(registry: Optional[NodeExecutorRegistry] = None) -> NodeExecutorRegistry:
    """Registry with a :class:`ConfigDrivenExecutor` for every node kind."""
    registry = registry or NodeExecutorRegistry()
    for kind in NodeKind:
        registry.register(
            kind, ConfigDrivenExecutor(kind),
            description=f"Config driven {kind.value} executor", replace=True,
        )
    return registry


class ScriptedExecutor:
    """Executor replaying a scripted sequence of results per node.

    Each script item is returned in turn; the last item repeats once the
    script is exhausted. Items may be :class:`Success`/:class:`Failure`
    outcomes, exceptions (raised) or plain values (returned as output).
    Nodes without a script succeed with ``default_output(node)``.

    Every call is recorded in :attr:`calls` as ``(node_id, input)``.
    """

    def __init__(
        self,
        scripts: Optional[Dict[str, Iterable[Any]]] = None,
        delays: Optional[Dict[str, float]] = None,
    ):
        self.scripts: Dict[str, List[Any]] = {
            node_id: list(items) for node_id, items in (scripts or {}).items()
        }
        self.delays = dict(delays or {})
        self.calls: List[Tuple[str, Any]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._positions: Counter = Counter()

    def calls_for(self, node_id: str) -> List[Any]:
        """Inputs passed to a node, one per call."""
        return [input_data for called_id, input_data in self.calls if called_id == node_id]

    def call_order(self) -> List[str]:
        return [node_id for node_id, _ in self.calls]

    @staticmethod
    def default_output(node: Node) -> Any:
        return {"node": node.id}

    def registry(self) -> NodeExecutorRegistry:
        """Registry sending every node kind to this executor."""
        registry = NodeExecutorRegistry()
        registry.set_fallback(self)
        return registry

    async def __call__(self, node: Node, input_data: Any) -> Any:
        self.calls.append((node.id, input_data))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(node.id, 0)
            if delay:
                await asyncio.sleep(delay)
            item = self._next_item(node)
        finally:
            self.in_flight -= 1

        if isinstance(item, BaseException):
            raise item
        return item

    def _next_item(self, node: Node) -> Any:
        script = self.scripts.get(node.id)
        if not script:
            return self.default_output(node)
        position = min(self._positions[node.id], len(script) - 1)
        self._positions[node.id] += 1
        return script[position]
