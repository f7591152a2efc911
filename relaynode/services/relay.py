"""
Signaling protocol engine.

Interprets client messages, keeps RoomStore and PeerRegistry up to date and
replicates room writes over the overlay. Every handler tolerates the same
logical message being delivered twice.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union, get_args

from pydantic import ValidationError

from relaynode.core.messages import (
    Answer,
    GetRooms,
    IceCandidate,
    Join,
    LeaveRoom,
    Offer,
    Register,
    RoomList,
    RoomListPayload,
    RoomState,
    RoomUpdateEnvelope,
    SignalingMessage,
    SyncUpdate,
    SyncUpdatePayload,
    encode_message,
)
from relaynode.services.monitoring import Monitoring
from relaynode.services.overlay import IOverlay, OverlayError, OverlayMessage, PeerDiscovered, PeerExpired
from relaynode.services.registry import Outbox, PeerRegistry
from relaynode.services.room_store import RoomStore

logger = logging.getLogger(__name__)


@dataclass
class ClientSession:
    """Relay-side view of one websocket connection."""

    client_id: str
    outbox: Outbox
    # Signaling ids registered through this connection
    aliases: Set[str] = field(default_factory=set)
    rooms: Set[str] = field(default_factory=set)
    # Rooms this connection has sent a Join for
    announced: Set[str] = field(default_factory=set)
    peer_id: Optional[str] = None
    closed: bool = False

    @property
    def identity(self) -> str:
        """Name other peers see in from_peer."""
        return self.peer_id or self.client_id


Handler = Callable[[ClientSession, Any], Awaitable[None]]


class SignalingRelay:
    """Protocol engine shared by every connection and the overlay loop."""

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        store: RoomStore,
        registry: PeerRegistry,
        overlay: IOverlay,
        monitoring: Monitoring,
        topic: str = "room-updates",
    ):
        self.store = store
        self.registry = registry
        self.overlay = overlay
        self.monitoring = monitoring
        self.topic = topic

        self._handlers: Dict[type, Handler] = {
            Register: self._on_register,
            Join: self._on_join,
            SyncUpdate: self._on_sync_update,
            LeaveRoom: self._on_leave_room,
            GetRooms: self._on_get_rooms,
            RoomList: self._on_room_list,
            Offer: self._on_point_to_point,
            Answer: self._on_point_to_point,
            IceCandidate: self._on_point_to_point,
        }
        variants = get_args(get_args(SignalingMessage)[0])
        assert set(variants) == set(self._handlers), "every signaling variant needs a handler"

    # === Connection lifecycle ===

    async def connect(self, outbox: Outbox) -> ClientSession:
        """Allocates a client id and registers its outbox."""
        session = ClientSession(client_id=uuid.uuid4().hex, outbox=outbox)
        await self.registry.register(session.client_id, outbox)
        self.monitoring.record_websocket_connected()
        logger.info("Client %s connected", session.client_id)
        return session

    async def disconnect(self, session: ClientSession) -> bool:
        """
        Tears a client down: registry entries, room memberships, outbox.
        Runs once per session, later calls return False.
        """
        if session.closed:
            return False
        session.closed = True

        for alias in list(session.aliases):
            await self.registry.unregister_alias(alias, session.outbox)
        await self.registry.unregister(session.client_id, session.outbox)

        for room_id in list(session.rooms):
            await self.store.remove_member(room_id, session.client_id)
        session.rooms.clear()
        session.announced.clear()

        session.outbox.close()
        self.monitoring.record_websocket_disconnected()
        logger.info("Client %s disconnected", session.client_id)
        return True

    # === Client messages ===

    async def handle(self, session: ClientSession, message: SignalingMessage) -> None:
        """Dispatches one decoded client message."""
        if session.closed:
            return
        await self._handlers[type(message)](session, message)

    async def _on_register(self, session: ClientSession, message: Register) -> None:
        peer_id = message.payload.peer_id
        session.aliases.add(peer_id)
        if not await self.registry.register_alias(peer_id, session.outbox):
            session.aliases.discard(peer_id)
            logger.warning("Client %s tried to register live client id %s", session.client_id, peer_id)
            return
        session.peer_id = peer_id
        logger.info("Client %s registered as %s", session.client_id, peer_id)

    async def _on_join(self, session: ClientSession, message: Join) -> None:
        payload = message.payload
        room_id = payload.room_id

        if room_id in session.announced:
            return

        # Recorded first so teardown always finds it. A member that only
        # wrote so far is already in the room but still gets announced.
        session.rooms.add(room_id)
        session.announced.add(room_id)
        await self.store.add_member(room_id, session.client_id, encrypted=payload.encrypted_data is not None)

        # The joiner gets the current document before anyone hears about it
        snapshot = await self.store.get_snapshot(room_id)
        if snapshot is not None and snapshot.document_state:
            sync = SyncUpdate(payload=SyncUpdatePayload(update=snapshot.document_state, room_id=room_id))
            _ = session.outbox.send(encode_message(sync))  # fire-and-forget

        await self.registry.broadcast_to_room(room_id, message, exclude=session.client_id)
        logger.info("Client %s joined room %s", session.client_id, room_id)

    async def _on_sync_update(self, session: ClientSession, message: SyncUpdate) -> None:
        payload = message.payload
        room_id = payload.room_id

        if room_id not in session.rooms:
            session.rooms.add(room_id)
            await self.store.add_member(room_id, session.client_id)

        snapshot = await self.store.apply_local_update(
            room_id, payload.update, encrypted=payload.encrypted_data is not None
        )
        await self.registry.broadcast_to_room(room_id, message, exclude=session.client_id)
        await self._replicate(room_id, snapshot)

    async def _on_leave_room(self, session: ClientSession, message: LeaveRoom) -> None:
        room_id = message.payload.room_id
        await self.store.remove_member(room_id, session.client_id)
        session.rooms.discard(room_id)
        session.announced.discard(room_id)

    async def _on_get_rooms(self, session: ClientSession, message: GetRooms) -> None:
        rooms = await self.store.list_rooms()
        reply = RoomList(payload=RoomListPayload(rooms=rooms))
        _ = session.outbox.send(encode_message(reply))  # fire-and-forget

    async def _on_room_list(self, session: ClientSession, message: RoomList) -> None:
        logger.debug("Ignoring RoomList sent by client %s", session.client_id)

    async def _on_point_to_point(
        self, session: ClientSession, message: Union[Offer, Answer, IceCandidate]
    ) -> None:
        target = await self.registry.lookup(message.payload.to_peer)
        if target is None:
            logger.debug("No local peer %s for %s, dropping", message.payload.to_peer, message.type)
            return

        relayed = message.model_copy(
            update={"payload": message.payload.model_copy(update={"from_peer": session.identity})}
        )
        _ = target.send(encode_message(relayed))  # fire-and-forget

    async def _replicate(self, room_id: str, snapshot: RoomState) -> None:
        """Publishes a freshly written room state. Failures keep the local write."""
        envelope = RoomUpdateEnvelope(room_id=room_id, room=snapshot, timestamp=snapshot.last_updated)
        try:
            await self.overlay.publish(self.topic, envelope.model_dump_json().encode())
        except OverlayError as e:
            logger.warning("Replication of room %s failed, keeping local state: %s", room_id, e)
            return
        self.monitoring.record_overlay_published()

    # === Overlay ===

    async def apply_remote(self, data: Union[str, bytes]) -> bool:
        """
        Applies a replication envelope from another node.
        Local members only hear about it if last-writer-wins accepted it.
        """
        try:
            envelope = RoomUpdateEnvelope.model_validate_json(data)
        except ValidationError as e:
            logger.warning("Dropping malformed room update: %s", e)
            return False

        accepted = await self.store.apply_remote_update(envelope.room_id, envelope.room, envelope.timestamp)
        if not accepted:
            logger.debug("Stale update for room %s (ts=%d) ignored", envelope.room_id, envelope.timestamp)
            return False

        sync = SyncUpdate(
            payload=SyncUpdatePayload(update=envelope.room.document_state, room_id=envelope.room_id)
        )
        await self.registry.broadcast_to_room(envelope.room_id, sync)
        return True

    async def run_overlay_events(self) -> None:
        """Consumes overlay events until the overlay closes."""
        async for event in self.overlay.events():
            try:
                if isinstance(event, OverlayMessage):
                    self.monitoring.record_overlay_received(event.source)
                    await self.apply_remote(event.data)
                elif isinstance(event, PeerDiscovered):
                    self.monitoring.record_peer_connected(event.node_id)
                elif isinstance(event, PeerExpired):
                    self.monitoring.record_peer_disconnected(event.node_id)
            # pylint: disable=broad-exception-caught
            except Exception as e:
                logger.error("Overlay event error: %s", e)
