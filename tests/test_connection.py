"""
Unit tests for ConnectionHandler using an in-memory websocket double.
"""

# pylint: disable=redefined-outer-name

import asyncio
import json
from unittest.mock import MagicMock

import pytest
from fastapi.websockets import WebSocketState

from relaynode.services.connection import ConnectionHandler
from relaynode.services.monitoring import Monitoring
from relaynode.services.registry import PeerRegistry
from relaynode.services.relay import SignalingRelay
from relaynode.services.room_store import RoomStore


class FakeWebSocket:
    """Just enough of starlette's WebSocket for the handler."""

    def __init__(self) -> None:
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list = []
        self.client_state = WebSocketState.CONNECTED
        self.accepted = False
        self.closed = False
        self.fail_send = False

    async def accept(self) -> None:
        self.accepted = True

    async def receive(self) -> dict:
        return await self.incoming.get()

    async def send_text(self, text: str) -> None:
        if self.fail_send:
            raise RuntimeError("socket gone")
        self.sent.append(json.loads(text))

    async def close(self) -> None:
        self.closed = True
        self.client_state = WebSocketState.DISCONNECTED

    def push_text(self, text: str) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def push_disconnect(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Polls until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture
def relay():
    store = RoomStore()
    overlay = MagicMock()
    return SignalingRelay(store, PeerRegistry(store), overlay, Monitoring())


@pytest.mark.asyncio
async def test_serves_until_client_disconnects(relay):
    """Malformed frames are skipped, valid ones answered, disconnect tears down."""
    websocket = FakeWebSocket()
    handler = ConnectionHandler(websocket, relay)
    task = asyncio.create_task(handler.run())

    websocket.push_text("garbage")
    websocket.push_text('{"type": "Join", "payload": {"user_id": "u", "user_color": "c", "room_id": "doc1"}}')
    websocket.push_text('{"type": "GetRooms", "payload": {}}')
    await wait_until(lambda: websocket.sent)

    assert websocket.accepted
    assert websocket.sent[0]["type"] == "RoomList"
    assert websocket.sent[0]["payload"]["rooms"][0]["peer_count"] == 1

    websocket.push_disconnect()
    await asyncio.wait_for(task, timeout=1.0)

    assert handler.session.closed
    assert await relay.store.members("doc1") == []
    assert await relay.registry.count() == 0
    assert relay.monitoring.active_connections == 0
    assert relay.monitoring.messages_received == 3
    assert relay.monitoring.messages_sent == 1
    # Client already closed, no close frame is sent back
    assert not websocket.closed


@pytest.mark.asyncio
async def test_binary_frames_are_decoded(relay):
    websocket = FakeWebSocket()
    handler = ConnectionHandler(websocket, relay)
    task = asyncio.create_task(handler.run())

    websocket.incoming.put_nowait({"type": "websocket.receive", "bytes": b'{"type": "GetRooms"}'})
    await wait_until(lambda: websocket.sent)

    assert websocket.sent[0]["type"] == "RoomList"
    websocket.push_disconnect()
    await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_write_failure_triggers_teardown(relay):
    """A failing send ends the connection even while the reader is idle."""
    websocket = FakeWebSocket()
    websocket.fail_send = True
    handler = ConnectionHandler(websocket, relay)
    task = asyncio.create_task(handler.run())

    websocket.push_text('{"type": "Join", "payload": {"user_id": "u", "user_color": "c", "room_id": "doc1"}}')
    websocket.push_text('{"type": "GetRooms"}')
    await asyncio.wait_for(task, timeout=1.0)

    assert handler.session.closed
    assert await relay.store.members("doc1") == []
    assert relay.monitoring.active_connections == 0


@pytest.mark.asyncio
async def test_teardown_runs_once(relay):
    websocket = FakeWebSocket()
    handler = ConnectionHandler(websocket, relay)
    task = asyncio.create_task(handler.run())
    await wait_until(lambda: handler.session is not None)

    websocket.push_disconnect()
    await asyncio.wait_for(task, timeout=1.0)

    assert not await handler.teardown()
    assert relay.monitoring.active_connections == 0
    assert relay.monitoring.total_connections == 1


@pytest.mark.asyncio
async def test_server_side_close_closes_socket(relay):
    """Closing the session from the relay ends both tasks and the socket."""
    websocket = FakeWebSocket()
    handler = ConnectionHandler(websocket, relay)
    task = asyncio.create_task(handler.run())
    await wait_until(lambda: handler.session is not None)

    handler.session.outbox.close()
    await asyncio.wait_for(task, timeout=1.0)

    assert handler.session.closed
    assert websocket.closed


@pytest.mark.asyncio
async def test_teardown_before_run_is_noop(relay):
    handler = ConnectionHandler(FakeWebSocket(), relay)

    assert not await handler.teardown()


@pytest.mark.asyncio
async def test_cancelled_run_releases_client(relay):
    """Server shutdown cancels the endpoint mid-session, nothing may leak."""
    websocket = FakeWebSocket()
    handler = ConnectionHandler(websocket, relay)
    task = asyncio.create_task(handler.run())

    websocket.push_text('{"type": "Join", "payload": {"user_id": "u", "user_color": "c", "room_id": "doc1"}}')
    websocket.push_text('{"type": "GetRooms"}')
    await wait_until(lambda: websocket.sent)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert handler.session.closed
    assert await relay.store.members("doc1") == []
    assert await relay.registry.count() == 0
    assert relay.monitoring.active_connections == 0
    assert websocket.closed


@pytest.mark.asyncio
async def test_repeated_cancellation_during_teardown(relay):
    """
    Cancel scopes keep cancelling at every suspension point.
    A second cancel landing while the child tasks wind down still leaves
    the registry and the room empty.
    """
    websocket = FakeWebSocket()
    handler = ConnectionHandler(websocket, relay)
    task = asyncio.create_task(handler.run())

    websocket.push_text('{"type": "Join", "payload": {"user_id": "u", "user_color": "c", "room_id": "doc1"}}')
    websocket.push_text('{"type": "GetRooms"}')
    await wait_until(lambda: websocket.sent)

    task.cancel()
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert handler.session.closed
    assert await relay.store.members("doc1") == []
    assert await relay.registry.count() == 0
    assert relay.monitoring.active_connections == 0
    assert relay.monitoring.total_connections == 1
