"""
Per-connection websocket driver.
A read task feeds the relay, a write task drains the outbox, and a single
teardown runs whichever of them stops first.
"""

import asyncio
import logging
from typing import Optional

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from relaynode.core.messages import decode_message
from relaynode.services.registry import Outbox
from relaynode.services.relay import ClientSession, SignalingRelay

logger = logging.getLogger(__name__)


class ConnectionHandler:
    """Owns one websocket for its whole lifetime."""

    def __init__(self, websocket: WebSocket, relay: SignalingRelay, queue_size: int = 256):
        self.websocket = websocket
        self.relay = relay
        self.queue_size = queue_size
        self.session: Optional[ClientSession] = None

    async def run(self) -> None:
        """Accepts the socket and serves it until either direction fails."""
        await self.websocket.accept()
        self.session = await self.relay.connect(Outbox(self.queue_size))

        reader = asyncio.create_task(self._read_loop(self.session))
        writer = asyncio.create_task(self._write_loop(self.session))
        try:
            done, _ = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.warning("Connection %s failed: %s", self.session.client_id, task.exception())
        finally:
            for task in (reader, writer):
                task.cancel()
            # Released before anything that can be interrupted, a cancelled
            # endpoint re-raises at the next suspension point
            released = await self.relay.disconnect(self.session)
            await asyncio.gather(reader, writer, return_exceptions=True)
            if released:
                await self._close_socket()

    async def teardown(self) -> bool:
        """Releases everything the connection holds. Safe to call repeatedly."""
        if self.session is None:
            return False
        released = await self.relay.disconnect(self.session)
        if released:
            await self._close_socket()
        return released

    async def _close_socket(self) -> None:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            await self.websocket.close()
        except (RuntimeError, OSError) as e:
            logger.debug("Close of %s failed: %s", self.session.client_id, e)

    async def _read_loop(self, session: ClientSession) -> None:
        try:
            while True:
                frame = await self.websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    return

                raw = frame.get("text") or frame.get("bytes")
                if raw is None:
                    continue
                self.relay.monitoring.record_websocket_message(is_outgoing=False)

                message = decode_message(raw)
                if message is None:
                    logger.debug("Dropping malformed frame from %s", session.client_id)
                    continue
                await self.relay.handle(session, message)
        except WebSocketDisconnect:
            logger.debug("Client %s went away", session.client_id)

    async def _write_loop(self, session: ClientSession) -> None:
        while True:
            frame = await session.outbox.get()
            if frame is None:
                return
            try:
                await self.websocket.send_text(frame)
            except (WebSocketDisconnect, RuntimeError, OSError) as e:
                logger.info("Write to %s failed: %s", session.client_id, e)
                return
            self.relay.monitoring.record_websocket_message(is_outgoing=True)
