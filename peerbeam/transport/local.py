"""
Same-device broadcast bus transport.

Peers running in one process share a LocalBus. Each room is a named
channel; every post reaches every other subscriber of that channel, in
post order. Joining a room subscribes to its channel and announces this
peer; peers that see the announce offer a connection to it.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Optional, Set

from ..mesh.envelope import AnnounceEnvelope, RoomJoinedEnvelope, WireModel
from ..mesh.identity import normalize_room_id
from .base import SignalingTransport

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "peerbeam"


class LocalBus:
    """In-process broadcast channels."""

    def __init__(self):
        self._channels: Dict[str, Set["LocalBusTransport"]] = defaultdict(set)

    def subscribe(self, channel: str, transport: "LocalBusTransport") -> None:
        self._channels[channel].add(transport)

    def unsubscribe(self, channel: str, transport: "LocalBusTransport") -> None:
        subscribers = self._channels.get(channel)
        if subscribers is None:
            return
        subscribers.discard(transport)
        if not subscribers:
            del self._channels[channel]

    def post(self, channel: str, sender: "LocalBusTransport", data: str) -> int:
        """Queue data for every subscriber but the sender. Returns the fan-out."""
        receivers = [t for t in self._channels.get(channel, ()) if t is not sender]
        for transport in receivers:
            transport._enqueue(data)
        return len(receivers)

    def subscribers(self, channel: str) -> int:
        return len(self._channels.get(channel, ()))


_default_bus: Optional[LocalBus] = None


def get_local_bus() -> LocalBus:
    """Get the process-wide bus."""
    global _default_bus
    if _default_bus is None:
        _default_bus = LocalBus()
    return _default_bus


class LocalBusTransport(SignalingTransport):
    """Signaling over a LocalBus channel named after the room."""

    needs_handshake = True

    def __init__(self, bus: Optional[LocalBus] = None):
        super().__init__()
        self.bus = bus or get_local_bus()
        self.channel: Optional[str] = None
        self._queue: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        self._queue = asyncio.Queue()
        self._pump_task = asyncio.create_task(self._pump())
        self.connected = True

    async def send(self, envelope: WireModel, target: Optional[str] = None) -> None:
        if envelope.type == "join":
            await self._join(envelope)
            return

        if envelope.type == "get-rooms":
            logger.debug("Room listing is not available on the local bus")
            return

        if not self.channel:
            logger.debug(f"Not in a room, dropping {envelope.type} envelope")
            return

        self.bus.post(self.channel, self, envelope.to_json())
        if envelope.type == "leave":
            self._unsubscribe()

    async def close(self) -> None:
        self._unsubscribe()
        if self._pump_task:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        self.connected = False

    async def _join(self, envelope: WireModel) -> None:
        room_id = normalize_room_id(envelope.room_id)
        self._unsubscribe()
        self.channel = f"{CHANNEL_PREFIX}-{room_id}"
        self.bus.subscribe(self.channel, self)

        await self._deliver(RoomJoinedEnvelope(room_id=room_id, peers=[]))
        self.bus.post(self.channel, self, AnnounceEnvelope(
            peer_id=envelope.peer_id,
            peer_name=envelope.peer_name,
        ).to_json())
        logger.debug(f"Announced on {self.channel}")

    def _unsubscribe(self) -> None:
        if self.channel:
            self.bus.unsubscribe(self.channel, self)
            self.channel = None

    def _enqueue(self, data: str) -> None:
        if self._queue is not None:
            self._queue.put_nowait(data)

    async def _pump(self) -> None:
        while True:
            data = await self._queue.get()
            await self._deliver_raw(data)
