"""
Anti-entropy between relay nodes.
Periodically pulls room snapshots from seed nodes so state published while
this node was away (or lost by the overlay) still converges.
"""

import asyncio
import json
import logging
import secrets
from typing import List

import httpx

from relaynode.services.relay import SignalingRelay

logger = logging.getLogger(__name__)


# pylint: disable=too-few-public-methods
class GossipService:
    """Background snapshot pull from seed nodes"""

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        relay: SignalingRelay,
        node_id: str,
        node_addr: str,
        peers: List[str],
        interval: float = 10.0,
        warmup: float = 3.0,
    ):
        self.relay = relay
        self.node_id = node_id
        self.node_addr = node_addr
        self.peers = peers
        self.interval = interval
        self.warmup = warmup
        self._running = False

    async def start(self) -> None:
        """Start node sync"""

        self._running = True
        logger.info("[%s] Started syncing. Seed peers: %s", self.node_id, self.peers)

        try:
            await asyncio.sleep(self.warmup)

            while self._running:
                try:
                    targets = [peer for peer in self.peers if peer != self.node_addr]
                    if targets:
                        await self.pull_snapshots(secrets.choice(targets))
                # pylint: disable=broad-exception-caught
                except Exception as e:
                    logger.error("Gossip error: %s", e)

                await asyncio.sleep(self.interval)

        finally:
            logger.info("[%s] Gossip loop terminated.", self.node_id)
            self._running = False

    def stop(self) -> None:
        """
        Signals the gossip loop to stop running.
        The loop will check this flag and exit gracefully.
        """
        logger.info("[%s] Stopping gossip service...", self.node_id)
        self._running = False

    async def pull_snapshots(self, target: str) -> int:
        """
        Fetches every room snapshot a seed node holds and applies them as
        remote updates. Returns how many were newer than the local state.
        """
        url = f"{target.rstrip('/')}/api/rooms/snapshots"

        async with httpx.AsyncClient(timeout=3.0) as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                logger.debug("Failed to pull snapshots from %s: %s", target, e)
                return 0

        if response.status_code != 200:
            logger.debug("Seed %s answered %d", target, response.status_code)
            return 0

        accepted = 0
        for envelope in response.json():
            if await self.relay.apply_remote(json.dumps(envelope)):
                accepted += 1

        if accepted:
            logger.info("Synced %d rooms from %s", accepted, target)
        return accepted
