"""
Local connections and their outbound channels.
All delivery is best-effort, nothing here ever waits on a slow client.
"""

import asyncio
import logging
from typing import Dict, Optional

from pydantic import BaseModel

from relaynode.core.messages import encode_message
from relaynode.services.room_store import RoomStore

logger = logging.getLogger(__name__)


class Outbox:
    """
    Bounded outbound queue of one connection.
    Frames are dropped when the queue is full or the outbox is closed.
    """

    def __init__(self, maxsize: int = 256):
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> bool:
        """Enqueues a frame without blocking. Returns False if it was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def close(self) -> None:
        """Stops accepting frames and wakes the writer."""
        if self._closed:
            return
        self._closed = True
        # The writer treats None as end of stream, make room for it if needed
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def get(self) -> Optional[str]:
        """Next frame to write, None once the outbox is closed."""
        return await self._queue.get()


class PeerRegistry:
    """
    Maps client ids to outboxes.
    Signaling aliases chosen through Register live in their own map, only
    point-to-point lookup consults them. Room fan-out is keyed by client id.
    """

    def __init__(self, store: RoomStore):
        self.store = store
        self._clients: Dict[str, Outbox] = {}
        self._aliases: Dict[str, Outbox] = {}
        self._lock = asyncio.Lock()

    async def register(self, client_id: str, outbox: Outbox) -> None:
        async with self._lock:
            self._clients[client_id] = outbox

    async def unregister(self, client_id: str, outbox: Optional[Outbox] = None) -> bool:
        """
        Removes a client id.
        When an outbox is given the entry is only removed if it still points at it.
        """
        async with self._lock:
            return self._release(self._clients, client_id, outbox)

    async def register_alias(self, peer_id: str, outbox: Outbox) -> bool:
        """
        Binds a signaling id to a connection, replacing any earlier binding.
        Refused when it names a live client id.
        """
        async with self._lock:
            if peer_id in self._clients:
                return False
            self._aliases[peer_id] = outbox
            return True

    async def unregister_alias(self, peer_id: str, outbox: Optional[Outbox] = None) -> bool:
        """Same as unregister, an alias re-registered by another connection survives."""
        async with self._lock:
            return self._release(self._aliases, peer_id, outbox)

    @staticmethod
    def _release(entries: Dict[str, Outbox], key: str, outbox: Optional[Outbox]) -> bool:
        current = entries.get(key)
        if current is None or (outbox is not None and current is not outbox):
            return False
        del entries[key]
        return True

    async def lookup(self, peer_id: str) -> Optional[Outbox]:
        """Resolves a point-to-point target, client ids take precedence over aliases."""
        async with self._lock:
            outbox = self._clients.get(peer_id)
            return outbox if outbox is not None else self._aliases.get(peer_id)

    async def count(self) -> int:
        async with self._lock:
            return len(self._clients)

    async def send_to(self, client_id: str, message: BaseModel) -> bool:
        """Unicast by client id. Unknown ids are a normal miss, not an error."""
        async with self._lock:
            outbox = self._clients.get(client_id)
        if outbox is None:
            return False
        return outbox.send(encode_message(message))

    async def broadcast_to_room(self, room_id: str, message: BaseModel, exclude: Optional[str] = None) -> int:
        """
        Delivers a message to every local member of a room except `exclude`.
        Returns how many members accepted it. Members whose outbox refuses the
        frame are left alone, the disconnect path reaps them.
        """
        members = await self.store.members(room_id)
        async with self._lock:
            targets = [
                (client_id, self._clients.get(client_id)) for client_id in members if client_id != exclude
            ]

        frame = encode_message(message)
        delivered = 0
        for client_id, outbox in targets:
            if outbox is not None and outbox.send(frame):
                delivered += 1
            else:
                logger.debug("Dropped broadcast in room %s for client %s", room_id, client_id)
        return delivered
