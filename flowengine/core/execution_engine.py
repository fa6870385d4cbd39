"""Execution Engine for workflow processing."""

import asyncio
import random
import threading
import uuid
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from ..models.core import (
    ExecutionRecord,
    ExecutionStatusEnum,
    Graph,
    LogLevel,
    Node,
    NodeError,
    NodeKind,
    NodeOutcome,
    NodeRunStateEnum,
    RunError,
    RunOptions,
    Failure,
)
from .exceptions import (
    ErrorCategory,
    ExecutionEngineError,
    RunNotFoundError,
    WorkflowEngineError,
    error_suggestion,
)
from .executor_registry import NodeExecutorRegistry
from .graph_validation import validate_graph
from .logging import ErrorRecoveryLogger, clear_logging_context, get_logger, set_logging_context
from .recorder import ExecutionRecorder, RunCallbacks
from .retry import RetryHandler
from .state_machine import NodeStateMachine, WorkflowStateMachine

logger = get_logger(__name__)
recovery_logger = ErrorRecoveryLogger("execution_engine")


class RunContext:
    """Mutable state owned by exactly one run."""

    def __init__(self, run_id: str, graph: Graph, registry: NodeExecutorRegistry,
                 options: RunOptions, recorder: ExecutionRecorder):
        self.run_id = run_id
        self.graph = graph
        self.registry = registry
        self.options = options
        self.recorder = recorder
        self.nodes: Dict[str, Node] = {node.id: node for node in graph.nodes}
        self.machines: Dict[str, NodeStateMachine] = {}
        self.visited: Set[str] = set()
        self.frontier: Deque[Tuple[str, Any]] = deque()
        self.outputs: Dict[str, Any] = {}
        self.workflow = WorkflowStateMachine(run_id)
        self.cancel_event = asyncio.Event()
        self.resume_event = asyncio.Event()
        self.resume_event.set()

    @property
    def canceled(self) -> bool:
        return self.cancel_event.is_set()


class RunHandle:
    """Control handle for a run started with :meth:`ExecutionEngine.start`.

    All methods must be called from the event loop running the workflow.
    """

    def __init__(self, context: RunContext, task: "asyncio.Task[ExecutionRecord]"):
        self._context = context
        self._task = task

    @property
    def run_id(self) -> str:
        return self._context.run_id

    @property
    def workflow_id(self) -> str:
        return self._context.graph.id

    @property
    def status(self) -> ExecutionStatusEnum:
        return self._context.workflow.status

    @property
    def is_done(self) -> bool:
        return self._task.done()

    @property
    def is_paused(self) -> bool:
        return not self._context.resume_event.is_set() and not self.is_done

    @property
    def record(self) -> Optional[ExecutionRecord]:
        """Final record once the run is finished, otherwise None."""
        return self._context.recorder.record

    def node_states(self):
        """Live snapshot of every node state."""
        return {node_id: machine.snapshot() for node_id, machine in self._context.machines.items()}

    def cancel(self) -> bool:
        """Request cancellation.

        Returns:
            False if the run already finished
        """
        if self.is_done or self._context.recorder.is_finalized:
            return False
        if not self._context.canceled:
            logger.info(f"Cancellation requested for run {self.run_id}")
            self._context.cancel_event.set()
        return True

    def pause(self) -> bool:
        """Stop dispatching new nodes; in-flight nodes pause at their next checkpoint."""
        if self.is_done or self._context.canceled or not self._context.resume_event.is_set():
            return False
        self._context.resume_event.clear()
        self._context.recorder.log_workflow(LogLevel.INFO, "Workflow execution paused")
        logger.info(f"Paused run {self.run_id}")
        return True

    def resume(self) -> bool:
        if self.is_done or self._context.resume_event.is_set():
            return False
        self._context.recorder.log_workflow(LogLevel.INFO, "Workflow execution resumed")
        self._context.resume_event.set()
        logger.info(f"Resumed run {self.run_id}")
        return True

    async def wait(self) -> ExecutionRecord:
        """Wait for the final record. Cancelling the waiter does not cancel the run."""
        return await asyncio.shield(self._task)


class ExecutionEngine:
    """Engine walking workflow graphs breadth-first from their entry points.

    One engine drives any number of independent runs. Each run owns its
    graph, visited set, frontier and recorder; the only shared state is the
    index of active runs.
    """

    def __init__(
        self,
        monitor=None,
        default_options: Optional[RunOptions] = None,
        max_concurrent_runs: int = 100,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the execution engine.

        Args:
            monitor: Optional :class:`MonitoringAggregator` receiving every finalized record
            default_options: Options used when a run does not pass its own
            max_concurrent_runs: Maximum number of runs active at the same time
            rng: Random source for retry jitter
        """
        self.monitor = monitor
        self.default_options = default_options or RunOptions()
        self._max_concurrent_runs = max_concurrent_runs
        self._rng = rng or random.Random()
        self._active_runs: Dict[str, RunHandle] = {}
        self._runs_lock = threading.RLock()

        logger.info(f"ExecutionEngine initialized with max_concurrent_runs={max_concurrent_runs}")

    async def run(
        self,
        graph: Graph,
        registry: NodeExecutorRegistry,
        options: Optional[RunOptions] = None,
        callbacks: Optional[RunCallbacks] = None,
    ) -> ExecutionRecord:
        """Execute a workflow graph and return its final record.

        Cancelling the awaiting task cancels the run; the record is still
        finalized as canceled before the cancellation propagates.
        """
        handle = self.start(graph, registry, options, callbacks)
        return await handle._task

    def start(
        self,
        graph: Graph,
        registry: NodeExecutorRegistry,
        options: Optional[RunOptions] = None,
        callbacks: Optional[RunCallbacks] = None,
        run_id: Optional[str] = None,
    ) -> RunHandle:
        """
        Start a workflow run in the background of the running event loop.

        Args:
            graph: Graph to execute
            registry: Executors used by this run
            options: Run options, defaults to the engine's default options
            callbacks: Observer hooks
            run_id: Explicit run ID, generated when omitted

        Returns:
            Handle to control and await the run

        Raises:
            ExecutionEngineError: If too many runs are active
        """
        run_id = run_id or str(uuid.uuid4())
        options = options or self.default_options

        with self._runs_lock:
            if len(self._active_runs) >= self._max_concurrent_runs:
                raise ExecutionEngineError(
                    f"Too many concurrent runs (limit {self._max_concurrent_runs}), please try again later",
                    run_id=run_id, workflow_id=graph.id, error_code="ENGINE_BUSY",
                )
            if run_id in self._active_runs:
                raise ExecutionEngineError(f"Run {run_id} is already active", run_id=run_id)

            labels = {node.id: node.display_name for node in graph.nodes}
            recorder = ExecutionRecorder(run_id, graph.id, callbacks, labels=labels)
            context = RunContext(run_id, graph, registry, options, recorder)
            task = asyncio.get_running_loop().create_task(self._execute(context))
            handle = RunHandle(context, task)
            self._active_runs[run_id] = handle

        logger.info(f"Started workflow execution: run_id={run_id}, workflow_id={graph.id}")
        return handle

    def get_active_runs(self) -> List[str]:
        with self._runs_lock:
            return list(self._active_runs.keys())

    def get_run(self, run_id: str) -> RunHandle:
        """
        Get the handle of an active run.

        Raises:
            RunNotFoundError: If the run is not active
        """
        with self._runs_lock:
            handle = self._active_runs.get(run_id)
        if handle is None:
            raise RunNotFoundError(run_id)
        return handle

    def is_run_active(self, run_id: str) -> bool:
        with self._runs_lock:
            return run_id in self._active_runs

    def cancel_run(self, run_id: str) -> bool:
        try:
            return self.get_run(run_id).cancel()
        except RunNotFoundError:
            logger.warning(f"Attempted to cancel non-active run: {run_id}")
            return False

    async def shutdown(self) -> None:
        """Cancel all active runs and wait for their records."""
        with self._runs_lock:
            handles = list(self._active_runs.values())
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*(handle._task for handle in handles), return_exceptions=True)
        logger.info("ExecutionEngine shutdown completed")

    async def _execute(self, ctx: RunContext) -> ExecutionRecord:
        token = set_logging_context(run_id=ctx.run_id, workflow_id=ctx.graph.id)
        try:
            return await self._drive(ctx)
        except asyncio.CancelledError:
            logger.info(f"Run {ctx.run_id} task was cancelled")
            self._cancel_in_flight(ctx)
            ctx.recorder.log_workflow(LogLevel.WARN, "Workflow execution canceled")
            self._finalize(ctx, ExecutionStatusEnum.CANCELED, error=RunError(
                code="CANCELED", message="Workflow execution canceled", category=ErrorCategory.SYSTEM.value,
            ))
            raise
        finally:
            with self._runs_lock:
                self._active_runs.pop(ctx.run_id, None)
            clear_logging_context(token)

    async def _drive(self, ctx: RunContext) -> ExecutionRecord:
        ctx.workflow.transition(ExecutionStatusEnum.RUNNING)

        validation = validate_graph(ctx.graph)
        if not validation.is_valid:
            issue = validation.errors[0]
            logger.warning(f"Run {ctx.run_id} rejected: {issue.message}")
            ctx.recorder.log_workflow(LogLevel.ERROR, issue.message, {
                "code": issue.code,
                "errors": [error.message for error in validation.errors],
            })
            return self._finalize(ctx, ExecutionStatusEnum.FAILED, include_nodes=False, error=RunError(
                code=issue.code, message=issue.message, category=ErrorCategory.VALIDATION.value,
            ))

        for node in ctx.graph.nodes:
            ctx.machines[node.id] = NodeStateMachine(node.id, listener=ctx.recorder.on_node_transition)

        ctx.recorder.log_workflow(LogLevel.INFO, "Starting workflow execution", {
            "entry_points": validation.entry_points,
            "parallel": ctx.options.parallel,
        })
        ctx.frontier.extend((node_id, None) for node_id in validation.entry_points)

        try:
            if ctx.options.parallel:
                await self._run_parallel(ctx)
            else:
                await self._run_sequential(ctx)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Engine error in run {ctx.run_id}: {e}", exc_info=True)
            self._cancel_in_flight(ctx)
            message = e.message if isinstance(e, WorkflowEngineError) else str(e)
            ctx.recorder.log_workflow(LogLevel.ERROR, f"Workflow execution failed: {message}", {
                "code": "ENGINE_ERROR",
                "exception_type": type(e).__name__,
            })
            return self._finalize(ctx, ExecutionStatusEnum.FAILED, error=RunError(
                code="ENGINE_ERROR", message=message, category=ErrorCategory.SYSTEM.value,
            ))

        if ctx.canceled:
            self._cancel_in_flight(ctx)
            ctx.recorder.log_workflow(LogLevel.WARN, "Workflow execution canceled")
            return self._finalize(ctx, ExecutionStatusEnum.CANCELED, error=RunError(
                code="CANCELED", message="Workflow execution canceled", category=ErrorCategory.SYSTEM.value,
            ))

        status = WorkflowStateMachine.aggregate(ctx.machines.values())
        if status == ExecutionStatusEnum.COMPLETED:
            ctx.recorder.log_workflow(LogLevel.INFO, "Workflow execution completed successfully")
        else:
            failed = [node_id for node_id, machine in ctx.machines.items()
                      if machine.state == NodeRunStateEnum.FAILED]
            ctx.recorder.log_workflow(
                LogLevel.ERROR, f"Workflow execution failed: node(s) {', '.join(failed)} failed",
                {"failed_nodes": failed},
            )
        return self._finalize(ctx, status)

    async def _run_sequential(self, ctx: RunContext) -> None:
        while ctx.frontier and not ctx.canceled:
            if not await self._wait_resumed(ctx):
                break
            node_id, input_data = ctx.frontier.popleft()
            if node_id in ctx.visited:
                continue
            ctx.visited.add(node_id)
            await self._run_node(ctx, node_id, input_data)
            if ctx.canceled:
                break
            self._enqueue_successors(ctx, node_id)

    async def _run_parallel(self, ctx: RunContext) -> None:
        semaphore = asyncio.Semaphore(ctx.options.max_parallelism)

        async def bounded(node_id: str, input_data: Any) -> None:
            async with semaphore:
                if ctx.canceled:
                    return
                await self._run_node(ctx, node_id, input_data)

        while ctx.frontier and not ctx.canceled:
            if not await self._wait_resumed(ctx):
                break

            wave: List[Tuple[str, Any]] = []
            while ctx.frontier:
                node_id, input_data = ctx.frontier.popleft()
                if node_id in ctx.visited:
                    continue
                ctx.visited.add(node_id)
                wave.append((node_id, input_data))

            tasks = [asyncio.ensure_future(bounded(node_id, input_data)) for node_id, input_data in wave]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                for task in tasks:
                    task.cancel()
                raise

            if ctx.canceled:
                break
            for node_id, _ in wave:
                self._enqueue_successors(ctx, node_id)

    async def _run_node(self, ctx: RunContext, node_id: str, input_data: Any) -> None:
        """Drive one node through start, run, retries and its terminal state."""
        node = ctx.nodes[node_id]
        machine = ctx.machines[node_id]
        retry = RetryHandler.for_kind(ctx.options, node.kind, rng=self._rng)

        machine.start()
        machine.run()

        while True:
            if not await self._checkpoint(ctx, machine):
                return
            outcome = await self._invoke(ctx, node, input_data)
            if outcome is None or not await self._checkpoint(ctx, machine):
                return

            if outcome.ok:
                decision = self._branch_decision(node, outcome)
                data = {"branch_decision": decision} if node.kind == NodeKind.CONDITION else None
                machine.complete(outcome.output, decision, data)
                if machine.attempt > 1:
                    recovery_logger.log_recovery_success(node_id, machine.attempt)
                return

            category = outcome.category or ErrorCategory.UNKNOWN.value
            machine.fail(
                NodeError(message=outcome.error, category=category, retryable=outcome.retryable),
                data={
                    "error": outcome.error,
                    "category": category,
                    "retryable": outcome.retryable,
                    "suggestion": error_suggestion(category),
                },
            )

            if not retry.should_retry(outcome, machine.attempt):
                recovery_logger.log_recovery_failure(node_id, outcome.error, machine.attempt)
                return

            delay = retry.get_delay(machine.attempt)
            recovery_logger.log_recovery_attempt(node_id, outcome.error, machine.attempt, retry.max_retries, delay)
            machine.retry(data={"delay": delay, "max_retries": retry.max_retries})

            if not await self._sleep(ctx, delay):
                return
            if ctx.resume_event.is_set():
                machine.run()
            else:
                machine.pause()
                if not await self._wait_resumed(ctx):
                    return
                machine.resume()

    async def _invoke(self, ctx: RunContext, node: Node, input_data: Any) -> Optional[NodeOutcome]:
        """Call the node's executor, racing it against cancellation and the timeout.

        Returns:
            The outcome, or None when the run was canceled first
        """
        timeout = self._node_timeout(ctx.options, node)
        exec_task = asyncio.ensure_future(ctx.registry.execute(node, input_data))
        cancel_task = asyncio.ensure_future(ctx.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {exec_task, cancel_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            self._abandon(ctx, node, exec_task)
            raise
        finally:
            cancel_task.cancel()

        if exec_task in done:
            return exec_task.result()

        self._abandon(ctx, node, exec_task)
        if cancel_task in done:
            return None
        return Failure(
            error=f"Node {node.display_name} timed out after {timeout}s",
            category=ErrorCategory.TIMEOUT.value,
            retryable=True,
        )

    def _abandon(self, ctx: RunContext, node: Node, task: "asyncio.Future[NodeOutcome]") -> None:
        """Leave an in-flight executor call running and log whatever it returns later."""
        run_id = ctx.run_id

        def log_late_result(finished: "asyncio.Future[NodeOutcome]") -> None:
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.info(f"Ignoring late error from node {node.id} in run {run_id}: {error}")
            else:
                logger.info(f"Ignoring late result from node {node.id} in run {run_id}: {finished.result()!r}")

        if task.done():
            log_late_result(task)
        else:
            task.add_done_callback(log_late_result)

    async def _checkpoint(self, ctx: RunContext, machine: NodeStateMachine) -> bool:
        """Pause a running node if the run is paused. Returns False once canceled."""
        if ctx.canceled:
            return False
        if ctx.resume_event.is_set():
            return True
        machine.pause()
        if not await self._wait_resumed(ctx):
            return False
        machine.resume()
        return True

    async def _wait_resumed(self, ctx: RunContext) -> bool:
        """Block while the run is paused. Returns False once canceled."""
        if ctx.canceled:
            return False
        if ctx.resume_event.is_set():
            return True

        resume_task = asyncio.ensure_future(ctx.resume_event.wait())
        cancel_task = asyncio.ensure_future(ctx.cancel_event.wait())
        try:
            await asyncio.wait({resume_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            resume_task.cancel()
            cancel_task.cancel()
        return not ctx.canceled

    async def _sleep(self, ctx: RunContext, delay: float) -> bool:
        """Backoff sleep that returns early (False) on cancellation."""
        if delay <= 0:
            return not ctx.canceled
        try:
            await asyncio.wait_for(ctx.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    def _enqueue_successors(self, ctx: RunContext, node_id: str) -> None:
        machine = ctx.machines[node_id]
        if machine.state != NodeRunStateEnum.COMPLETED:
            return
        targets = self._select_targets(ctx.graph, ctx.nodes[node_id], machine.branch_decision)
        if not targets:
            ctx.outputs[node_id] = machine.output
            return
        for target in targets:
            ctx.frontier.append((target, machine.output))

    @staticmethod
    def _select_targets(graph: Graph, node: Node, decision: Any) -> List[str]:
        """Targets of the edges followed after ``node`` completes.

        Condition nodes follow only edges whose branch tag matches the
        decision; untagged edges belong to the "true" branch.
        """
        edges = graph.outgoing_edges(node.id)
        if node.kind != NodeKind.CONDITION:
            return [edge.target for edge in edges]

        if isinstance(decision, bool):
            wanted = "true" if decision else "false"
        else:
            wanted = str(decision).strip().lower()
        return [
            edge.target for edge in edges
            if (edge.branch_tag or "true").strip().lower() == wanted
        ]

    @staticmethod
    def _branch_decision(node: Node, outcome: NodeOutcome) -> Any:
        if outcome.branch_decision is not None:
            return outcome.branch_decision
        if node.kind == NodeKind.CONDITION:
            return bool(outcome.output)
        return None

    @staticmethod
    def _node_timeout(options: RunOptions, node: Node) -> Optional[float]:
        timeout = node.config.get("timeout", options.node_timeout)
        if timeout is None:
            return None
        timeout = float(timeout)
        return timeout if timeout > 0 else None

    def _cancel_in_flight(self, ctx: RunContext) -> None:
        for machine in ctx.machines.values():
            machine.cancel()

    def _finalize(
        self,
        ctx: RunContext,
        status: ExecutionStatusEnum,
        error: Optional[RunError] = None,
        include_nodes: bool = True,
    ) -> ExecutionRecord:
        if not ctx.workflow.is_terminal:
            ctx.workflow.transition(status)

        node_states = {}
        if include_nodes:
            node_states = {node_id: machine.snapshot() for node_id, machine in ctx.machines.items()}

        record = ctx.recorder.finalize(status, node_states=node_states, output=ctx.outputs, error=error)
        logger.info(
            f"Workflow execution {ctx.run_id} finished with status {record.status.value} "
            f"in {record.duration:.3f}s"
        )

        if self.monitor is not None:
            try:
                self.monitor.ingest(record)
            except Exception as e:
                logger.warning(f"Failed to record run {ctx.run_id} in monitor: {e}", exc_info=True)
        return record


def run_workflow(
    graph: Graph,
    registry: NodeExecutorRegistry,
    options: Optional[RunOptions] = None,
    callbacks: Optional[RunCallbacks] = None,
    engine: Optional[ExecutionEngine] = None,
) -> ExecutionRecord:
    """Synchronous convenience wrapper running one workflow to completion."""
    engine = engine or ExecutionEngine()
    return asyncio.run(engine.run(graph, registry, options, callbacks))
