"""
Room registry for the relay server.

RoomRegistry is the room table: room id -> members. It is plain state with
no I/O; every operation returns the deliveries it causes as
(connection id, message) pairs.

RegistryService owns a RoomRegistry and applies operations one at a time
from a single task fed by a queue, so the table has exactly one writer.
Deliveries are sent afterwards by the caller's task.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..mesh.identity import generate_room_id, normalize_room_id

logger = logging.getLogger(__name__)

Delivery = Tuple[str, dict]
SendFn = Callable[[dict], Awaitable[None]]


@dataclass
class Member:
    """A peer connected to a room."""
    conn_id: str
    peer_id: str
    peer_name: str
    joined_at: float = field(default_factory=time.time)

    def to_ref(self) -> dict:
        return {"peerId": self.peer_id, "peerName": self.peer_name}


@dataclass
class Room:
    """A room and its members, keyed by connection id."""
    room_id: str
    members: Dict[str, Member] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @property
    def peer_count(self) -> int:
        return len(self.members)

    def others(self, conn_id: Optional[str]) -> List[Member]:
        return [m for cid, m in self.members.items() if cid != conn_id]

    def find(self, peer_id: str) -> Optional[Member]:
        for member in self.members.values():
            if member.peer_id == peer_id:
                return member
        return None

    def summary(self) -> dict:
        return {
            "id": self.room_id,
            "peerCount": self.peer_count,
            "peers": [{"id": m.peer_id, "name": m.peer_name} for m in self.members.values()],
        }


class RoomRegistry:
    """Room membership and relay routing."""

    def __init__(self):
        self.rooms: Dict[str, Room] = {}
        self._membership: Dict[str, str] = {}  # conn_id -> room_id

    def room_of(self, conn_id: str) -> Optional[Room]:
        room_id = self._membership.get(conn_id)
        return self.rooms.get(room_id) if room_id else None

    def join(self, conn_id: str, room_id: Optional[str], peer_id: str, peer_name: str) -> List[Delivery]:
        """
        Move a connection into a room.

        The joiner gets room-joined with the members already present; those
        members get peer-joined. Leaving a previous room notifies it first.
        """
        deliveries = self.depart(conn_id)

        room_id = normalize_room_id(room_id)
        if not room_id:
            room_id = self._unused_room_id()

        room = self.rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id)
            self.rooms[room_id] = room
            logger.info(f"Created room {room_id}")

        existing = room.others(conn_id)
        deliveries.append((conn_id, {
            "type": "room-joined",
            "roomId": room_id,
            "peers": [m.to_ref() for m in existing],
        }))
        for member in existing:
            deliveries.append((member.conn_id, {
                "type": "peer-joined",
                "peerId": peer_id,
                "peerName": peer_name,
            }))

        room.members[conn_id] = Member(conn_id=conn_id, peer_id=peer_id, peer_name=peer_name)
        self._membership[conn_id] = room_id
        logger.info(f"{peer_name or peer_id} joined room {room_id} ({room.peer_count} peers)")
        return deliveries

    def relay(self, conn_id: str, message: dict) -> List[Delivery]:
        """Forward a directed envelope to its recipient in the sender's room."""
        room = self.room_of(conn_id)
        if room is None:
            logger.debug(f"Dropping {message.get('type')} from connection outside any room")
            return []

        recipient = room.find(str(message.get("to", "")))
        if recipient is None:
            logger.debug(f"Dropping {message.get('type')} for unknown peer {message.get('to')} in {room.room_id}")
            return []
        return [(recipient.conn_id, message)]

    def depart(self, conn_id: str) -> List[Delivery]:
        """Remove a connection from its room, deleting the room once empty."""
        room_id = self._membership.pop(conn_id, None)
        room = self.rooms.get(room_id) if room_id else None
        if room is None:
            return []

        member = room.members.pop(conn_id, None)
        deliveries: List[Delivery] = []
        if member is not None:
            for other in room.others(conn_id):
                deliveries.append((other.conn_id, {
                    "type": "peer-left",
                    "peerId": member.peer_id,
                    "peerName": member.peer_name,
                }))
            logger.info(f"{member.peer_name or member.peer_id} left room {room.room_id}")

        if room.peer_count == 0:
            del self.rooms[room.room_id]
            logger.info(f"Room {room.room_id} deleted (empty)")
        return deliveries

    def list_rooms(self) -> List[dict]:
        return [room.summary() for room in self.rooms.values()]

    def _unused_room_id(self) -> str:
        while True:
            room_id = generate_room_id()
            if room_id not in self.rooms:
                return room_id


class RegistryService:
    """
    Single-writer front for a RoomRegistry.

    Usage:
        service = RegistryService()
        await service.start()
        service.attach(conn_id, websocket.send_json)
        deliveries = await service.submit(service.registry.join, conn_id, "ABCD", peer_id, name)
        await service.dispatch(deliveries)
    """

    def __init__(self, registry: Optional[RoomRegistry] = None):
        self.registry = registry or RoomRegistry()
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._senders: Dict[str, SendFn] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._run())
        logger.debug("Registry service started")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def submit(self, operation: Callable[..., Any], *args: Any) -> Any:
        """Run an operation on the registry task and return its result."""
        if not self.running:
            raise RuntimeError("Registry service is not running")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((operation, args, future))
        return await future

    def attach(self, conn_id: str, send: SendFn) -> None:
        self._senders[conn_id] = send

    def detach(self, conn_id: str) -> None:
        self._senders.pop(conn_id, None)

    @property
    def connection_count(self) -> int:
        return len(self._senders)

    async def dispatch(self, deliveries: List[Delivery]) -> None:
        """Send each delivery to its connection, skipping ones that are gone."""
        for conn_id, message in deliveries:
            send = self._senders.get(conn_id)
            if send is None:
                continue
            try:
                await send(message)
            except Exception as e:
                logger.debug(f"Delivery to {conn_id} failed: {e}")

    async def _run(self) -> None:
        while True:
            operation, args, future = await self._queue.get()
            if future.cancelled():
                continue
            try:
                future.set_result(operation(*args))
            except Exception as e:
                future.set_exception(e)
