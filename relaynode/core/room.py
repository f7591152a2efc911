"""In memory room record and the logical clock stamping its writes."""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Set

from relaynode.core.messages import RoomState


@dataclass
class Room:
    """
    Node-local state of a room.
    Members are local connections only and never leave this node.
    """

    room_id: str
    members: Set[str] = field(default_factory=set)
    document_state: bytes = b""
    encrypted: bool = False
    last_updated: int = 0
    # Monotonic time the room last had zero members, None while occupied
    vacated_at: Optional[float] = None

    def snapshot(self) -> RoomState:
        """Returns the externally visible projection of the room."""
        return RoomState(
            document_state=self.document_state,
            encrypted=self.encrypted,
            last_updated=self.last_updated,
            peer_count=len(self.members),
        )

    def has_document(self) -> bool:
        return bool(self.document_state)


class LogicalClock:
    """
    Hybrid logical clock in milliseconds.

    tick() never returns a value lower than or equal to anything previously
    ticked or observed, so a local write always supersedes every replicated
    state this node has already accepted.
    """

    def __init__(self, wall: Callable[[], float] = time.time):
        self._wall = wall
        self._last = 0

    @property
    def last(self) -> int:
        return self._last

    def tick(self) -> int:
        now_ms = int(self._wall() * 1000)
        self._last = max(now_ms, self._last + 1)
        return self._last

    def observe(self, timestamp: int) -> None:
        """Moves the clock past a timestamp received from another node."""
        self._last = max(self._last, timestamp)
