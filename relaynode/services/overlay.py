"""
Gossip overlay between relay nodes.

The relay only needs publish/subscribe on named topics plus peer discovery
events. RedisOverlay provides both on top of Redis Pub/Sub, NullOverlay is
used when the node runs standalone.
"""

import asyncio
import base64
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Deque, Dict, List, Optional, Set, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class OverlayError(Exception):
    """The overlay could not accept a publish."""


@dataclass(frozen=True)
class OverlayMessage:
    """A message published by another node."""

    source: str
    id: str
    data: bytes


@dataclass(frozen=True)
class PeerDiscovered:
    node_id: str


@dataclass(frozen=True)
class PeerExpired:
    node_id: str


OverlayEvent = Union[OverlayMessage, PeerDiscovered, PeerExpired]


class IOverlay(ABC):
    """
    Abstract interface of the overlay.
    Authenticity and de-duplication of messages are the overlay's job.
    """

    node_id: str

    @abstractmethod
    async def start(self) -> None:
        """Starts background listeners."""
        pass

    @abstractmethod
    async def subscribe(self, topic: str) -> None:
        pass

    @abstractmethod
    async def publish(self, topic: str, data: bytes) -> str:
        """
        Publishes data on a topic and returns its message id.
        Raises OverlayError if the message could not be handed over.
        """
        pass

    @abstractmethod
    def events(self) -> AsyncIterator[OverlayEvent]:
        """Inbound events, ends once the overlay is closed."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class NullOverlay(IOverlay):
    """Overlay of a node with no peers. Publishing goes nowhere."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        self._closed = asyncio.Event()

    async def start(self) -> None:
        logger.info("[%s] No overlay configured, running standalone", self.node_id)

    async def subscribe(self, topic: str) -> None:
        pass

    async def publish(self, topic: str, data: bytes) -> str:
        return uuid.uuid4().hex

    async def events(self) -> AsyncIterator[OverlayEvent]:
        await self._closed.wait()
        return
        yield  # pylint: disable=unreachable

    async def close(self) -> None:
        self._closed.set()


# pylint: disable=too-many-instance-attributes
class RedisOverlay(IOverlay):
    """
    Overlay on Redis Pub/Sub.

    Each topic maps to the channel ``<prefix>:<topic>``. Frames carry the
    publishing node id and a message id, so a node can skip its own frames
    and duplicates. Nodes announce themselves on ``<prefix>:presence``.
    """

    def __init__(
        self,
        node_id: str,
        redis_url: str = "redis://localhost:6379",
        channel_prefix: str = "relaynode",
        heartbeat_interval: float = 5.0,
        peer_expiry: float = 15.0,
        client: Optional[redis.Redis] = None,
        seen_capacity: int = 4096,
    ):
        self.node_id = node_id
        self.channel_prefix = channel_prefix
        self.heartbeat_interval = heartbeat_interval
        self.peer_expiry = peer_expiry
        self.client = client or redis.from_url(redis_url, decode_responses=True)  # type: ignore[no-untyped-call]

        self.presence_channel = f"{channel_prefix}:presence"
        self._topics: Set[str] = set()
        self._events: asyncio.Queue[Optional[OverlayEvent]] = asyncio.Queue()
        self._peers: Dict[str, float] = {}
        self._seen_order: Deque[str] = deque()
        self._seen: Set[str] = set()
        self._seen_capacity = seen_capacity
        self._pubsub: Optional[redis.client.PubSub] = None
        self._tasks: List[asyncio.Task[None]] = []

    def channel_for(self, topic: str) -> str:
        return f"{self.channel_prefix}:{topic}"

    async def start(self) -> None:
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(self.presence_channel, *[self.channel_for(t) for t in self._topics])
        logger.info("[%s] Overlay subscribed to %s", self.node_id, self.presence_channel)

        self._tasks.append(asyncio.create_task(self._listen()))
        self._tasks.append(asyncio.create_task(self._heartbeat()))

    async def subscribe(self, topic: str) -> None:
        if topic in self._topics:
            return
        self._topics.add(topic)
        if self._pubsub is not None:
            await self._pubsub.subscribe(self.channel_for(topic))
        logger.info("[%s] Subscribed to topic %s", self.node_id, topic)

    async def publish(self, topic: str, data: bytes) -> str:
        message_id = uuid.uuid4().hex
        frame = json.dumps(
            {"source": self.node_id, "id": message_id, "data": base64.b64encode(data).decode("ascii")}
        )
        try:
            await self.client.publish(self.channel_for(topic), frame)
        except RedisError as e:
            raise OverlayError(f"Publish on {topic} failed: {e}") from e
        return message_id

    async def events(self) -> AsyncIterator[OverlayEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe()
            except RedisError as e:
                logger.warning("Overlay unsubscribe failed: %s", e)
            self._pubsub = None

        self._events.put_nowait(None)
        logger.info("[%s] Overlay closed", self.node_id)

    # === Inbound ===

    async def _listen(self) -> None:
        assert self._pubsub is not None
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    self.handle_frame(message["channel"], message["data"])
                except (ValueError, KeyError, TypeError) as e:
                    logger.error("Could not parse overlay frame: %s", e)
        except RedisError as e:
            logger.error("Overlay listener error: %s", e)

    def handle_frame(self, channel: str, raw: str) -> None:
        """Turns one Redis message into overlay events."""
        if channel == self.presence_channel:
            self._saw_peer(json.loads(raw)["node_id"])
            return

        frame = json.loads(raw)
        source, message_id = frame["source"], frame["id"]
        if source == self.node_id or not self._remember(message_id):
            return

        self._saw_peer(source)
        data = base64.b64decode(frame["data"], validate=True)
        self._events.put_nowait(OverlayMessage(source=source, id=message_id, data=data))

    def _remember(self, message_id: str) -> bool:
        """Records a message id. Returns False if it was already seen."""
        if message_id in self._seen:
            return False
        self._seen.add(message_id)
        self._seen_order.append(message_id)
        if len(self._seen_order) > self._seen_capacity:
            self._seen.discard(self._seen_order.popleft())
        return True

    # === Discovery ===

    def _saw_peer(self, node_id: str) -> None:
        if node_id == self.node_id:
            return
        if node_id not in self._peers:
            logger.info("[%s] Discovered peer %s", self.node_id, node_id)
            self._events.put_nowait(PeerDiscovered(node_id))
        self._peers[node_id] = time.monotonic()

    def expire_peers(self, now: Optional[float] = None) -> List[str]:
        """Forgets peers whose last heartbeat is older than the expiry."""
        now = time.monotonic() if now is None else now
        expired = [node_id for node_id, seen in self._peers.items() if now - seen > self.peer_expiry]
        for node_id in expired:
            del self._peers[node_id]
            logger.info("[%s] Peer %s expired", self.node_id, node_id)
            self._events.put_nowait(PeerExpired(node_id))
        return expired

    @property
    def peers(self) -> List[str]:
        return list(self._peers)

    async def _heartbeat(self) -> None:
        announcement = json.dumps({"node_id": self.node_id})
        while True:
            try:
                await self.client.publish(self.presence_channel, announcement)
            except RedisError as e:
                logger.warning("Presence heartbeat failed: %s", e)
            self.expire_peers()
            await asyncio.sleep(self.heartbeat_interval)
