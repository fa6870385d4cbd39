"""FastAPI REST and WebSocket endpoints for the workflow engine."""

import json
import uuid
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.execution_engine import ExecutionEngine, RunHandle
from ..core.executor_registry import NodeExecutorRegistry
from ..core.exceptions import APIError, RunNotFoundError
from ..core.graph_validation import validate_graph
from ..core.logging import get_logger
from ..core.monitoring import MonitoringAggregator, MonitoringSnapshot, NodeMetrics, WorkflowSummary
from ..core.recorder import RunCallbacks
from ..core.websocket_manager import WebSocketManager
from ..models.core import (
    ExecutionStatusEnum,
    Graph,
    NodeRunState,
    RunOptions,
    ValidationResult,
    utcnow,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_execution_engine: Optional[ExecutionEngine] = None
_registry: Optional[NodeExecutorRegistry] = None
_monitor: Optional[MonitoringAggregator] = None
_websocket_manager: Optional[WebSocketManager] = None


def init_dependencies(
    execution_engine: ExecutionEngine,
    registry: NodeExecutorRegistry,
    monitor: MonitoringAggregator,
    websocket_manager: Optional[WebSocketManager] = None,
):
    """Initialize the global dependencies."""
    global _execution_engine, _registry, _monitor, _websocket_manager
    _execution_engine = execution_engine
    _registry = registry
    _monitor = monitor
    _websocket_manager = websocket_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def get_registry() -> NodeExecutorRegistry:
    """Dependency to get the executor registry used for API runs."""
    if _registry is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Executor registry not initialized"
        )
    return _registry


def get_monitor() -> MonitoringAggregator:
    """Dependency to get monitoring aggregator."""
    if _monitor is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Monitoring aggregator not initialized"
        )
    return _monitor


# Request/Response models
class StartRunRequest(BaseModel):
    """Request model for starting a workflow run."""
    graph: Graph = Field(..., description="Graph to execute")
    options: Optional[RunOptions] = Field(None, description="Run options, server defaults when omitted")
    wait: bool = Field(False, description="Wait for the run to finish and return its record")


class StartRunResponse(BaseModel):
    """Response model for a started run."""
    run_id: str = Field(..., description="Unique identifier of the run")
    workflow_id: str = Field(..., description="ID of the executed workflow")
    status: ExecutionStatusEnum = Field(..., description="Current status of the run")


class RunStatusResponse(BaseModel):
    """Live status of an active run."""
    run_id: str
    workflow_id: str
    status: ExecutionStatusEnum
    paused: bool
    node_states: Dict[str, NodeRunState]


class RunControlResponse(BaseModel):
    """Result of a cancel, pause or resume request."""
    run_id: str
    action: str
    accepted: bool
    status: ExecutionStatusEnum


class HealthResponse(BaseModel):
    status: str
    total_runs: int
    active_runs: int
    success_rate: float
    average_execution_time: float
    workflows: Dict[str, WorkflowSummary]


class WorkflowExecutionsResponse(BaseModel):
    summary: Optional[WorkflowSummary]
    executions: List[Dict[str, Any]]


@router.post(
    "/graphs/validate",
    response_model=ValidationResult,
    summary="Validate a workflow graph",
)
async def validate_workflow_graph(graph: Graph) -> ValidationResult:
    """Validate a graph without executing it."""
    result = validate_graph(graph)
    logger.info(f"Validated graph {graph.id}: valid={result.is_valid}")
    return result


@router.get("/executors", summary="List registered executors")
async def list_executors(registry: NodeExecutorRegistry = Depends(get_registry)) -> Dict[str, str]:
    return registry.list_executors()


@router.post(
    "/executions",
    response_model=StartRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Execute a workflow graph",
    description="Start a run; with wait=true the final execution record is returned instead",
)
async def start_execution(
    request: StartRunRequest,
    execution_engine: ExecutionEngine = Depends(get_execution_engine),
    registry: NodeExecutorRegistry = Depends(get_registry),
):
    """
    Start executing a workflow graph.

    Args:
        request: Graph, optional options and wait flag
        execution_engine: Execution engine dependency
        registry: Executor registry dependency

    Returns:
        Run ID and status, or the full execution record when waiting

    Raises:
        ExecutionEngineError: If the engine refuses the run
    """
    run_id = str(uuid.uuid4())
    callbacks: Optional[RunCallbacks] = None
    if _websocket_manager is not None:
        callbacks = _websocket_manager.callbacks_for(run_id)

    logger.info(f"Starting workflow execution for graph: {request.graph.id}")
    handle = execution_engine.start(request.graph, registry, request.options, callbacks, run_id=run_id)

    if request.wait:
        record = await handle.wait()
        return JSONResponse(status_code=status.HTTP_200_OK, content=record.model_dump(mode="json"))

    return StartRunResponse(run_id=handle.run_id, workflow_id=handle.workflow_id, status=handle.status)


@router.get("/executions", summary="List active runs")
async def list_active_executions(
    execution_engine: ExecutionEngine = Depends(get_execution_engine),
) -> Dict[str, List[str]]:
    return {"active_runs": execution_engine.get_active_runs()}


@router.get(
    "/executions/{run_id}",
    summary="Get a run",
    description="Full execution record for finished runs, live status for active ones",
)
async def get_execution(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine),
    monitor: MonitoringAggregator = Depends(get_monitor),
):
    """
    Get the status or final record of a run.

    Raises:
        RunNotFoundError: If the run is neither active nor in the monitor history
    """
    if execution_engine.is_run_active(run_id):
        handle = execution_engine.get_run(run_id)
        if handle.record is None:
            return _live_status(handle)
        record = handle.record
    else:
        record = monitor.get_record(run_id)

    if record is None:
        raise RunNotFoundError(run_id)
    return JSONResponse(content=record.model_dump(mode="json"))


def _live_status(handle: RunHandle) -> JSONResponse:
    response = RunStatusResponse(
        run_id=handle.run_id,
        workflow_id=handle.workflow_id,
        status=handle.status,
        paused=handle.is_paused,
        node_states=handle.node_states(),
    )
    return JSONResponse(content=response.model_dump(mode="json"))


def _control(execution_engine: ExecutionEngine, run_id: str, action: str) -> RunControlResponse:
    try:
        handle = execution_engine.get_run(run_id)
    except RunNotFoundError:
        logger.warning(f"Cannot {action} run {run_id}: not active")
        raise

    accepted = getattr(handle, action)()
    logger.info(f"{action.capitalize()} request for run {run_id}: accepted={accepted}")
    return RunControlResponse(run_id=run_id, action=action, accepted=accepted, status=handle.status)


@router.post("/executions/{run_id}/cancel", response_model=RunControlResponse, summary="Cancel a run")
async def cancel_execution(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine),
) -> RunControlResponse:
    return _control(execution_engine, run_id, "cancel")


@router.post("/executions/{run_id}/pause", response_model=RunControlResponse, summary="Pause a run")
async def pause_execution(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine),
) -> RunControlResponse:
    return _control(execution_engine, run_id, "pause")


@router.post("/executions/{run_id}/resume", response_model=RunControlResponse, summary="Resume a paused run")
async def resume_execution(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine),
) -> RunControlResponse:
    return _control(execution_engine, run_id, "resume")


@router.get("/monitoring/health", response_model=HealthResponse, summary="Overall engine health")
async def monitoring_health(
    execution_engine: ExecutionEngine = Depends(get_execution_engine),
    monitor: MonitoringAggregator = Depends(get_monitor),
) -> HealthResponse:
    snapshot = monitor.snapshot(error_limit=0)
    return HealthResponse(
        status=snapshot.health,
        total_runs=snapshot.total_runs,
        active_runs=len(execution_engine.get_active_runs()),
        success_rate=snapshot.success_rate,
        average_execution_time=snapshot.average_execution_time,
        workflows=snapshot.workflows,
    )


@router.get("/monitoring/nodes", summary="Per-node error rates and health")
async def monitoring_nodes(monitor: MonitoringAggregator = Depends(get_monitor)) -> Dict[str, NodeMetrics]:
    return monitor.get_node_metrics()


@router.get("/monitoring/error-stats", summary="Error categories and most frequent errors")
async def monitoring_error_stats(monitor: MonitoringAggregator = Depends(get_monitor)) -> Dict[str, Any]:
    return monitor.get_error_stats()


@router.get("/monitoring/snapshot", response_model=MonitoringSnapshot, summary="All monitoring metrics")
async def monitoring_snapshot(monitor: MonitoringAggregator = Depends(get_monitor)) -> MonitoringSnapshot:
    return monitor.snapshot()


@router.get(
    "/monitoring/executions/{workflow_id}",
    response_model=WorkflowExecutionsResponse,
    summary="Recent runs of a workflow",
)
async def monitoring_workflow_executions(
    workflow_id: str,
    limit: int = Query(20, ge=1, le=1000, description="Maximum number of records"),
    monitor: MonitoringAggregator = Depends(get_monitor),
) -> WorkflowExecutionsResponse:
    records = monitor.get_recent_executions(workflow_id, limit=limit)
    return WorkflowExecutionsResponse(
        summary=monitor.get_workflow_summary(workflow_id),
        executions=[record.model_dump(mode="json") for record in records],
    )


@router.get("/ws/connections", summary="Active WebSocket connections")
async def get_websocket_connections() -> Dict[str, Any]:
    if _websocket_manager is None:
        raise APIError("WebSocket monitoring not available", status_code=503, endpoint="/ws/connections")
    return _websocket_manager.get_connection_info()


@router.websocket("/ws/monitor")
async def websocket_monitor(websocket: WebSocket):
    """
    WebSocket endpoint streaming run progress.

    Client messages: ``{"action": "subscribe" | "unsubscribe" | "ping", "run_id": "..."}``.

    Server messages carry ``event_type`` (``node_state_changed``,
    ``log_entry``, ``workflow_completed`` and control acknowledgements),
    ``run_id``, ``timestamp`` and ``data``.
    """
    if _websocket_manager is None:
        await websocket.close(code=1011, reason="WebSocket monitoring not available")
        return

    connection_id = None
    try:
        connection_id = await _websocket_manager.connect(websocket)

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": "Invalid JSON message format",
                    "timestamp": utcnow().isoformat()
                })
                continue

            action = message.get("action") if isinstance(message, dict) else None
            run_id = message.get("run_id") if isinstance(message, dict) else None

            if action == "subscribe" and run_id:
                if not await _websocket_manager.subscribe_to_run(connection_id, run_id):
                    await _websocket_manager.send_to_connection(connection_id, {
                        "event_type": "error",
                        "message": f"Failed to subscribe to run {run_id}",
                        "timestamp": utcnow().isoformat()
                    })
            elif action == "unsubscribe" and run_id:
                await _websocket_manager.unsubscribe_from_run(connection_id, run_id)
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "unsubscribed",
                    "run_id": run_id,
                    "timestamp": utcnow().isoformat()
                })
            elif action == "ping":
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "pong",
                    "timestamp": utcnow().isoformat()
                })
            else:
                await _websocket_manager.send_to_connection(connection_id, {
                    "event_type": "error",
                    "message": f"Unknown action: {action}",
                    "timestamp": utcnow().isoformat()
                })

    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {connection_id}")
    except APIError as e:
        logger.warning(f"WebSocket connection refused: {e.message}")
    finally:
        if connection_id:
            await _websocket_manager.disconnect(connection_id)
