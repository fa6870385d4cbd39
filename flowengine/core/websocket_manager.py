"""WebSocket Manager streaming run progress to subscribers."""

import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect

from ..models.core import ExecutionRecord, LogEntry, NodeRunStateEnum, utcnow
from .exceptions import APIError
from .logging import get_logger
from .recorder import RunCallbacks

logger = get_logger(__name__)


class WebSocketConnection:
    """Represents a WebSocket connection with metadata."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at: datetime = utcnow()
        self.subscribed_runs: Set[str] = set()
        self.is_active = True


class WebSocketManager:
    """Forwards run observer events to the WebSocket subscribers of each run.

    Observer callbacks run inside the engine and must not block, so they
    only enqueue events; a background processor task started with
    :meth:`start_broadcast_processor` delivers them.
    """

    def __init__(self, max_connections: int = 100, queue_size: int = 1000):
        self.max_connections = max_connections
        self._connections: Dict[str, WebSocketConnection] = {}
        self._run_subscribers: Dict[str, Set[str]] = {}
        self._queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue(maxsize=queue_size)
        self._processor_task: Optional[asyncio.Task] = None

        logger.info("WebSocketManager initialized")

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accept a new WebSocket connection.

        Returns:
            Connection ID for the new connection

        Raises:
            APIError: If the connection limit is reached
        """
        if self.get_connection_count() >= self.max_connections:
            await websocket.close(code=1013)
            raise APIError("Too many WebSocket connections", status_code=503, endpoint="/ws/monitor")

        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = WebSocketConnection(websocket, connection_id)

        logger.info(f"WebSocket connection established: {connection_id}")
        await self._send_to_connection(connection_id, {
            "event_type": "connection_established",
            "connection_id": connection_id,
            "timestamp": utcnow().isoformat(),
        })
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        connection.is_active = False
        for run_id in list(connection.subscribed_runs):
            self._remove_subscriber(connection_id, run_id)
        logger.info(f"WebSocket connection disconnected and cleaned up: {connection_id}")

    async def subscribe_to_run(self, connection_id: str, run_id: str) -> bool:
        """
        Subscribe a connection to the events of a run.

        Returns:
            True if subscription was successful, False otherwise
        """
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            logger.warning(f"Attempted to subscribe unknown or inactive connection: {connection_id}")
            return False

        connection.subscribed_runs.add(run_id)
        self._run_subscribers.setdefault(run_id, set()).add(connection_id)
        logger.info(f"Connection {connection_id} subscribed to run {run_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "subscription_confirmed",
            "run_id": run_id,
            "timestamp": utcnow().isoformat(),
        })
        return True

    async def unsubscribe_from_run(self, connection_id: str, run_id: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        connection.subscribed_runs.discard(run_id)
        self._remove_subscriber(connection_id, run_id)
        logger.info(f"Connection {connection_id} unsubscribed from run {run_id}")
        return True

    def _remove_subscriber(self, connection_id: str, run_id: str) -> None:
        subscribers = self._run_subscribers.get(run_id)
        if subscribers is None:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            del self._run_subscribers[run_id]

    async def broadcast_workflow_event(self, run_id: str, event_type: str, data: Dict[str, Any]) -> int:
        """
        Send an event to all subscribers of a run.

        Returns:
            Number of subscribers the event was delivered to
        """
        subscribers = list(self._run_subscribers.get(run_id, ()))
        if not subscribers:
            return 0

        event = {
            "event_type": event_type,
            "run_id": run_id,
            "timestamp": utcnow().isoformat(),
            "data": data,
        }
        delivered = 0
        for connection_id in subscribers:
            if await self._send_to_connection(connection_id, event):
                delivered += 1
            else:
                await self.disconnect(connection_id)

        logger.debug(f"Broadcasted {event_type} event for run {run_id} to {delivered} subscribers")
        return delivered

    def callbacks_for(self, run_id: str) -> RunCallbacks:
        """Observer callbacks that stream a run's progress to its subscribers."""

        def on_node_state_change(node_id: str, state: NodeRunStateEnum) -> None:
            self.queue_workflow_event(run_id, "node_state_changed", {"node_id": node_id, "state": state.value})

        def on_log_appended(entry: LogEntry) -> None:
            self.queue_workflow_event(run_id, "log_entry", entry.model_dump(mode="json"))

        def on_run_finalized(record: ExecutionRecord) -> None:
            self.queue_workflow_event(run_id, "workflow_completed", {
                "status": record.status.value,
                "workflow_id": record.workflow_id,
                "duration": record.duration,
                "error": record.error.model_dump() if record.error else None,
            })

        return RunCallbacks(
            on_node_state_change=on_node_state_change,
            on_log_appended=on_log_appended,
            on_run_finalized=on_run_finalized,
        )

    def queue_workflow_event(self, run_id: str, event_type: str, data: Dict[str, Any]) -> None:
        """Queue an event for the broadcast processor; drops it when the queue is full."""
        if run_id not in self._run_subscribers:
            return
        try:
            self._queue.put_nowait({"run_id": run_id, "event_type": event_type, "data": data})
        except asyncio.QueueFull:
            logger.warning(f"Broadcast queue full, dropping {event_type} event for run {run_id}")

    def start_broadcast_processor(self) -> None:
        if self._processor_task is None or self._processor_task.done():
            self._processor_task = asyncio.get_running_loop().create_task(self._process_broadcast_queue())
            logger.info("WebSocket broadcast processor started")

    async def stop_broadcast_processor(self) -> None:
        if self._processor_task is not None:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None
            logger.info("WebSocket broadcast processor stopped")

    async def _process_broadcast_queue(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self.broadcast_workflow_event(item["run_id"], item["event_type"], item["data"])
            except Exception as e:
                logger.error(f"Error processing broadcast queue: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def _send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False
        try:
            await connection.websocket.send_text(json.dumps(data, default=str))
            return True
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected during send: {connection_id}")
        except Exception as e:
            logger.error(f"Error sending WebSocket message to {connection_id}: {e}")
        connection.is_active = False
        return False

    async def send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        return await self._send_to_connection(connection_id, data)

    def get_connection_count(self) -> int:
        return len([conn for conn in self._connections.values() if conn.is_active])

    def get_run_subscriber_count(self, run_id: str) -> int:
        return len(self._run_subscribers.get(run_id, ()))

    def get_connection_info(self) -> Dict[str, Any]:
        connections = [
            {
                "connection_id": conn_id,
                "connected_at": conn.connected_at.isoformat(),
                "subscribed_runs": sorted(conn.subscribed_runs),
            }
            for conn_id, conn in self._connections.items() if conn.is_active
        ]
        return {
            "total_connections": len(connections),
            "connections": connections,
            "run_subscribers": {
                run_id: len(subscribers) for run_id, subscribers in self._run_subscribers.items()
            },
        }
