"""
Authoritative in-memory room state.
Merges local writes and replicated writes with last-writer-wins.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from relaynode.core.messages import RoomInfo, RoomState, RoomUpdateEnvelope
from relaynode.core.room import LogicalClock, Room

logger = logging.getLogger(__name__)


class RoomStore:
    """
    Rooms keyed by their case-sensitive id.

    Every public method holds the lock for exactly one map operation and
    returns copies, so callers never iterate live structures.
    """

    def __init__(
        self,
        room_ttl: Optional[float] = None,
        clock: Optional[LogicalClock] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.room_ttl = room_ttl
        self.clock = clock or LogicalClock()
        self._monotonic = monotonic
        self._rooms: Dict[str, Room] = {}
        self._lock = asyncio.Lock()

    def _get_or_create(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id, vacated_at=self._monotonic())
            self._rooms[room_id] = room
        return room

    # === Replication ===

    async def apply_local_update(self, room_id: str, data: bytes, encrypted: bool = False) -> RoomState:
        """
        Stores a write coming from a local client.
        Always wins locally, the returned snapshot is what gets published.
        """
        async with self._lock:
            room = self._get_or_create(room_id)
            room.document_state = bytes(data)
            room.encrypted = room.encrypted or encrypted
            room.last_updated = self.clock.tick()
            return room.snapshot()

    async def apply_remote_update(self, room_id: str, incoming: RoomState, timestamp: int) -> bool:
        """
        Applies a replicated write.

        Accepted only when the room is unknown here or the incoming
        timestamp is strictly newer. Equal or older timestamps leave the
        room untouched, so concurrent writers with skewed clocks can lose
        updates.
        """
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is not None and timestamp <= room.last_updated:
                return False

            if room is None:
                room = self._get_or_create(room_id)

            previous = room.last_updated
            room.document_state = incoming.document_state
            room.encrypted = room.encrypted or incoming.encrypted
            room.last_updated = timestamp
            self.clock.observe(timestamp)

            assert room.last_updated >= previous
            return True

    # === Queries ===

    async def get_snapshot(self, room_id: str) -> Optional[RoomState]:
        async with self._lock:
            room = self._rooms.get(room_id)
            return room.snapshot() if room else None

    async def list_rooms(self) -> List[RoomInfo]:
        """Rooms known to this node with their local peer count."""
        async with self._lock:
            return [
                RoomInfo(room_id=room.room_id, peer_count=len(room.members), encrypted=room.encrypted)
                for room in self._rooms.values()
            ]

    async def members(self, room_id: str) -> List[str]:
        """Copy of the local member set of a room."""
        async with self._lock:
            room = self._rooms.get(room_id)
            return list(room.members) if room else []

    async def snapshots(self) -> List[RoomUpdateEnvelope]:
        """Envelopes for every room holding a document, served to pulling nodes."""
        async with self._lock:
            return [
                RoomUpdateEnvelope(room_id=room.room_id, room=room.snapshot(), timestamp=room.last_updated)
                for room in self._rooms.values()
                if room.has_document()
            ]

    # === Membership ===

    async def add_member(self, room_id: str, client_id: str, encrypted: bool = False) -> bool:
        """Adds a local client to a room. Returns False if it was already there."""
        async with self._lock:
            room = self._get_or_create(room_id)
            room.encrypted = room.encrypted or encrypted
            room.vacated_at = None
            if client_id in room.members:
                return False
            room.members.add(client_id)
            return True

    async def remove_member(self, room_id: str, client_id: str) -> bool:
        """
        Removes a local client from a room.
        Document state survives the last member leaving, only an empty
        room with nothing stored is dropped right away.
        """
        async with self._lock:
            room = self._rooms.get(room_id)
            if room is None or client_id not in room.members:
                return False

            room.members.discard(client_id)
            if not room.members:
                room.vacated_at = self._monotonic()
                if not room.has_document():
                    del self._rooms[room_id]
            return True

    # === Retention ===

    async def reap_idle(self, now: Optional[float] = None) -> List[str]:
        """
        Drops rooms that have had no local member for longer than the TTL.
        With no TTL configured rooms are kept for the process lifetime.
        """
        if self.room_ttl is None:
            return []

        now = self._monotonic() if now is None else now
        async with self._lock:
            expired = [
                room_id
                for room_id, room in self._rooms.items()
                if not room.members and room.vacated_at is not None and now - room.vacated_at >= self.room_ttl
            ]
            for room_id in expired:
                del self._rooms[room_id]

        if expired:
            logger.info("Reaped %d idle rooms: %s", len(expired), expired)
        return expired
