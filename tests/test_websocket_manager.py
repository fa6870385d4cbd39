"""Tests for the WebSocket broadcast manager."""

import asyncio
import json

import pytest
from fastapi import WebSocketDisconnect

from flowengine.core.builtin_executors import ScriptedExecutor
from flowengine.core.exceptions import APIError
from flowengine.core.websocket_manager import WebSocketManager


class FakeWebSocket:
    """Minimal stand-in recording what the manager sends."""

    def __init__(self, fail_on_send: bool = False):
        self.accepted = False
        self.closed_with = None
        self.sent = []
        self.fail_on_send = fail_on_send

    async def accept(self):
        self.accepted = True

    async def close(self, code=1000, reason=None):
        self.closed_with = code

    async def send_text(self, text):
        if self.fail_on_send:
            raise WebSocketDisconnect(code=1006)
        self.sent.append(json.loads(text))

    def events(self, event_type):
        return [message for message in self.sent if message["event_type"] == event_type]


class TestConnections:
    """Connection lifecycle and subscriptions."""

    @pytest.mark.asyncio
    async def test_connect_and_subscribe(self):
        manager = WebSocketManager()
        socket = FakeWebSocket()

        connection_id = await manager.connect(socket)
        assert await manager.subscribe_to_run(connection_id, "run-1")

        assert socket.accepted
        assert [m["event_type"] for m in socket.sent] == ["connection_established", "subscription_confirmed"]
        assert manager.get_connection_count() == 1
        assert manager.get_run_subscriber_count("run-1") == 1
        info = manager.get_connection_info()
        assert info["connections"][0]["subscribed_runs"] == ["run-1"]

    @pytest.mark.asyncio
    async def test_connection_limit(self):
        manager = WebSocketManager(max_connections=1)
        await manager.connect(FakeWebSocket())
        rejected = FakeWebSocket()

        with pytest.raises(APIError):
            await manager.connect(rejected)
        assert rejected.closed_with == 1013

    @pytest.mark.asyncio
    async def test_disconnect_removes_subscriptions(self):
        manager = WebSocketManager()
        connection_id = await manager.connect(FakeWebSocket())
        await manager.subscribe_to_run(connection_id, "run-1")

        await manager.disconnect(connection_id)

        assert manager.get_connection_count() == 0
        assert manager.get_run_subscriber_count("run-1") == 0
        assert not await manager.subscribe_to_run(connection_id, "run-2")

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        manager = WebSocketManager()
        connection_id = await manager.connect(FakeWebSocket())
        await manager.subscribe_to_run(connection_id, "run-1")

        assert await manager.unsubscribe_from_run(connection_id, "run-1")
        assert manager.get_run_subscriber_count("run-1") == 0


class TestBroadcast:
    """Event delivery to run subscribers."""

    @pytest.mark.asyncio
    async def test_broadcast_reaches_only_subscribers(self):
        manager = WebSocketManager()
        subscriber, bystander = FakeWebSocket(), FakeWebSocket()
        sub_id = await manager.connect(subscriber)
        await manager.connect(bystander)
        await manager.subscribe_to_run(sub_id, "run-1")

        delivered = await manager.broadcast_workflow_event("run-1", "log_entry", {"message": "hi"})

        assert delivered == 1
        assert subscriber.events("log_entry")[0]["data"] == {"message": "hi"}
        assert bystander.events("log_entry") == []

    @pytest.mark.asyncio
    async def test_failed_send_drops_connection(self):
        manager = WebSocketManager()
        socket = FakeWebSocket()
        connection_id = await manager.connect(socket)
        await manager.subscribe_to_run(connection_id, "run-1")
        socket.fail_on_send = True

        delivered = await manager.broadcast_workflow_event("run-1", "log_entry", {})

        assert delivered == 0
        assert manager.get_connection_count() == 0

    @pytest.mark.asyncio
    async def test_run_callbacks_stream_progress(self, engine, linear_graph, fast_options):
        manager = WebSocketManager()
        socket = FakeWebSocket()
        connection_id = await manager.connect(socket)
        await manager.subscribe_to_run(connection_id, "run-ws")
        manager.start_broadcast_processor()

        try:
            record = await engine.start(
                linear_graph, ScriptedExecutor().registry(), fast_options,
                manager.callbacks_for("run-ws"), run_id="run-ws",
            ).wait()
            await asyncio.wait_for(manager._queue.join(), timeout=1)
        finally:
            await manager.stop_broadcast_processor()

        assert len(socket.events("log_entry")) == len(record.logs)
        assert len(socket.events("node_state_changed")) == 9
        completed = socket.events("workflow_completed")
        assert completed[0]["data"]["status"] == "completed"
        assert completed[0]["run_id"] == "run-ws"

    @pytest.mark.asyncio
    async def test_events_without_subscribers_are_not_queued(self):
        manager = WebSocketManager()

        manager.queue_workflow_event("nobody", "log_entry", {})

        assert manager._queue.empty()
