"""
In-process counters fed by connection and overlay lifecycle hooks.
"""

import time
from typing import Any, Dict

from pydantic import BaseModel, Field


class PeerStats(BaseModel):
    """Statistics of one overlay peer, alive between discovery and expiry."""

    peer_id: str
    connected_since: int = Field(default_factory=lambda: int(time.time()))
    messages_received: int = 0


class Monitoring:
    """Counters for websocket clients and overlay peers."""

    def __init__(self) -> None:
        self.started_at = time.monotonic()
        self.active_connections = 0
        self.total_connections = 0
        self.messages_sent = 0
        self.messages_received = 0
        self.overlay_published = 0
        self.overlay_received = 0
        self.peer_connections: Dict[str, PeerStats] = {}

    def record_websocket_connected(self) -> None:
        self.active_connections += 1
        self.total_connections += 1

    def record_websocket_disconnected(self) -> None:
        self.active_connections = max(0, self.active_connections - 1)

    def record_websocket_message(self, is_outgoing: bool) -> None:
        if is_outgoing:
            self.messages_sent += 1
        else:
            self.messages_received += 1

    def record_peer_connected(self, peer_id: str) -> None:
        if peer_id not in self.peer_connections:
            self.peer_connections[peer_id] = PeerStats(peer_id=peer_id)

    def record_peer_disconnected(self, peer_id: str) -> None:
        self.peer_connections.pop(peer_id, None)

    def record_overlay_published(self) -> None:
        self.overlay_published += 1

    def record_overlay_received(self, peer_id: str) -> None:
        self.overlay_received += 1
        stats = self.peer_connections.get(peer_id)
        if stats is not None:
            stats.messages_received += 1

    def get_stats(self) -> Dict[str, Any]:
        return {
            "uptime_secs": int(time.monotonic() - self.started_at),
            "websocket": {
                "active_connections": self.active_connections,
                "total_connections": self.total_connections,
                "messages_sent": self.messages_sent,
                "messages_received": self.messages_received,
            },
            "overlay": {
                "connected_peers": len(self.peer_connections),
                "messages_published": self.overlay_published,
                "messages_received": self.overlay_received,
                "peer_connections": {
                    peer_id: stats.model_dump() for peer_id, stats in self.peer_connections.items()
                },
            },
        }
