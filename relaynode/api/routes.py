"""
API Routes definition.
Operational endpoints, snapshot serving for anti-entropy, and the
signaling websocket.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, WebSocket

from relaynode.api.dependencies import get_node
from relaynode.core.messages import RoomInfo, RoomUpdateEnvelope
from relaynode.services.connection import ConnectionHandler
from relaynode.services.node import NodeService

router = APIRouter()
ws_router = APIRouter()


@router.get("/health")
async def health_check(node: NodeService = Depends(get_node)) -> Dict[str, Any]:
    """Returns the node status"""
    rooms = await node.store.list_rooms()
    return {
        "status": "online",
        "running": node.is_running(),
        "node_id": node.node_id,
        "rooms": len(rooms),
        "clients": node.monitoring.active_connections,
    }


@router.get("/rooms", response_model=List[RoomInfo])
async def get_rooms(node: NodeService = Depends(get_node)) -> List[RoomInfo]:
    """Rooms known to this node, with local peer counts."""
    return await node.store.list_rooms()


@router.get("/rooms/snapshots", response_model=List[RoomUpdateEnvelope])
async def get_snapshots(node: NodeService = Depends(get_node)) -> List[RoomUpdateEnvelope]:
    """
    Every stored room document as a replication envelope.
    Pulled by other nodes' anti-entropy loop.
    """
    return await node.store.snapshots()


@router.get("/stats")
async def get_stats(node: NodeService = Depends(get_node)) -> Dict[str, Any]:
    """Connection and overlay counters"""
    return node.monitoring.get_stats()


# === Signaling websocket ===


@ws_router.websocket("/signal")
async def signaling_endpoint(websocket: WebSocket, node: NodeService = Depends(get_node)) -> None:
    """
    Signaling endpoint.
    Runs until the client disconnects or its outbound side fails.
    """
    handler = ConnectionHandler(websocket, node.relay, queue_size=node.settings.outbound_queue_size)
    await handler.run()
