"""
Node controller. Builds the shared services once and hands the same
instances to every connection and background loop.
"""

import asyncio
import logging
import uuid
from typing import List, Optional

from relaynode.config.settings import Settings
from relaynode.services.gossip import GossipService
from relaynode.services.monitoring import Monitoring
from relaynode.services.overlay import IOverlay, NullOverlay, RedisOverlay
from relaynode.services.registry import PeerRegistry
from relaynode.services.relay import SignalingRelay
from relaynode.services.room_store import RoomStore

logger = logging.getLogger(__name__)


# pylint: disable=too-many-instance-attributes
class NodeService:
    """
    Owns RoomStore, PeerRegistry, the overlay and the background tasks
    (overlay events, idle room reaper, anti-entropy pull).
    """

    def __init__(self, settings: Settings, overlay: Optional[IOverlay] = None):
        self.settings = settings
        self.node_id = settings.node_id or uuid.uuid4().hex

        self.store = RoomStore(room_ttl=settings.room_ttl_seconds)
        self.registry = PeerRegistry(self.store)
        self.monitoring = Monitoring()
        self.overlay = overlay or self._build_overlay()
        self.relay = SignalingRelay(
            store=self.store,
            registry=self.registry,
            overlay=self.overlay,
            monitoring=self.monitoring,
            topic=settings.overlay_topic,
        )

        self._gossip: Optional[GossipService] = None
        self._tasks: List[asyncio.Task[None]] = []
        self._running = False

    def _build_overlay(self) -> IOverlay:
        if not self.settings.redis_url:
            return NullOverlay(self.node_id)
        return RedisOverlay(
            node_id=self.node_id,
            redis_url=self.settings.redis_url,
            channel_prefix=self.settings.channel_prefix,
            heartbeat_interval=self.settings.heartbeat_interval,
            peer_expiry=self.settings.peer_expiry,
        )

    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Joins the overlay and starts background loops."""
        if self._running:
            return

        logger.info("Starting relay node %s", self.node_id)
        await self.overlay.subscribe(self.settings.overlay_topic)
        await self.overlay.start()

        self._tasks.append(asyncio.create_task(self.relay.run_overlay_events()))
        self._tasks.append(asyncio.create_task(self._reap_loop()))

        peers = self.settings.peer_list
        if peers and not self.settings.bootnode:
            self._gossip = GossipService(
                relay=self.relay,
                node_id=self.node_id,
                node_addr=self.settings.advertised_addr or f"http://localhost:{self.settings.server_port}",
                peers=peers,
                interval=self.settings.sync_interval,
            )
            self._tasks.append(asyncio.create_task(self._gossip.start()))

        self._running = True

    async def shutdown(self) -> None:
        """Stops background loops and leaves the overlay."""
        if not self._running:
            return

        logger.info("Shutting down services...")
        if self._gossip:
            self._gossip.stop()

        await self.overlay.close()

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._tasks.clear()
        self._gossip = None
        self._running = False
        logger.info("Node shutdown complete.")

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.reap_interval)
            await self.store.reap_idle()
