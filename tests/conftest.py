"""
Shared test fixtures.

FakeBackend stands in for aiortc. Its connections and channels are pyee
event emitters like aiortc's, so negotiators attach handlers the same way.
When an offering connection applies an answer produced by another fake
connection of the same backend, the pair is linked: both report
"connected", the answering side receives the data channel and both channel
ends open. Sends on an open channel arrive as "message" events on the other
end, held back until that end has opened.
"""

import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import pytest
from pyee.asyncio import AsyncIOEventEmitter

from peerbeam.mesh.identity import PeerIdentity
from peerbeam.mesh.rtc import RtcBackend
from peerbeam.server.registry import RoomRegistry
from peerbeam.transport.base import SignalingTransport

_uids = itertools.count(1)


@dataclass
class FakeDescription:
    type: str
    sdp: str


class FakeChannel(AsyncIOEventEmitter):
    def __init__(self, label: str):
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.sent: List[str] = []
        self.remote: Optional["FakeChannel"] = None
        self._inbox: List[str] = []

    def open(self):
        self.readyState = "open"
        self.emit("open")
        inbox, self._inbox = self._inbox, []
        for data in inbox:
            self.emit("message", data)

    def send(self, data):
        if self.readyState != "open":
            raise RuntimeError("channel is not open")
        self.sent.append(data)
        if self.remote is None:
            return
        if self.remote.readyState == "open":
            self.remote.emit("message", data)
        elif self.remote.readyState == "connecting":
            self.remote._inbox.append(data)

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")


class FakePeerConnection(AsyncIOEventEmitter):
    def __init__(self, backend: "FakeBackend"):
        super().__init__()
        self.uid = str(next(_uids))
        self.backend = backend
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.channels: List[FakeChannel] = []
        self.added: List[dict] = []
        self.closed = False

        # Awaited inside addIceCandidate before the candidate is recorded
        self.before_add: Optional[Callable] = None

    def createDataChannel(self, label):
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return FakeDescription("offer", f"fake:{self.uid}:offer")

    async def createAnswer(self):
        if self.remoteDescription is None:
            raise RuntimeError("no remote description")
        return FakeDescription("answer", f"fake:{self.uid}:answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        if description.type == "answer" and self.backend.auto_link:
            self.backend.link(self)

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise RuntimeError("candidate before remote description")
        if self.before_add is not None:
            hook, self.before_add = self.before_add, None
            await hook(candidate)
        self.added.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    def set_state(self, state: str):
        self.connectionState = state
        self.emit("connectionstatechange")


class FakeBackend(RtcBackend):
    """RtcBackend producing linked FakePeerConnections."""

    def __init__(self, auto_link: bool = True):
        self.auto_link = auto_link
        self.fail_create = False
        self.connections: List[FakePeerConnection] = []
        self._by_uid: Dict[str, FakePeerConnection] = {}

    def create_connection(self):
        if self.fail_create:
            raise RuntimeError("no connection for you")
        pc = FakePeerConnection(self)
        self.connections.append(pc)
        self._by_uid[pc.uid] = pc
        return pc

    def description_from_dict(self, data):
        return FakeDescription(data["type"], data["sdp"])

    def description_to_dict(self, description):
        return {"type": description.type, "sdp": description.sdp}

    def candidate_from_dict(self, data):
        value = data.get("candidate")
        if not value:
            return None
        if not isinstance(value, str) or not value.startswith("candidate:"):
            raise ValueError(f"unparseable candidate {value!r}")
        return dict(data)

    def candidate_to_dict(self, candidate):
        return dict(candidate)

    def link(self, offerer: FakePeerConnection) -> bool:
        """Connect an offering connection to the connection that answered it."""
        parts = offerer.remoteDescription.sdp.split(":")
        answerer = self._by_uid.get(parts[1]) if len(parts) == 3 else None
        if answerer is None or answerer.closed or offerer.closed or not offerer.channels:
            return False

        local = offerer.channels[-1]
        remote = FakeChannel(local.label)
        local.remote, remote.remote = remote, local

        offerer.set_state("connected")
        answerer.set_state("connected")
        answerer.emit("datachannel", remote)
        local.open()
        remote.open()
        return True


# ============ Signaling fakes ============

class RecordingTransport(SignalingTransport):
    """Transport that records what is sent and delivers nothing by itself."""

    def __init__(self, needs_handshake: bool = False):
        super().__init__()
        self.needs_handshake = needs_handshake
        self.sent = []
        self.closed = False

    async def connect(self):
        self.connected = True

    async def send(self, envelope, target=None):
        self.sent.append(envelope)

    async def close(self):
        self.closed = True
        self.connected = False

    def sent_of(self, msg_type: str):
        return [e for e in self.sent if e.type == msg_type]


class SignalingHub:
    """In-memory relay server built on RoomRegistry."""

    def __init__(self):
        self.registry = RoomRegistry()
        self.transports: Dict[str, "HubTransport"] = {}

    def transport(self) -> "HubTransport":
        transport = HubTransport(self, str(len(self.transports) + 1))
        self.transports[transport.conn_id] = transport
        return transport

    def handle(self, conn_id: str, data: dict) -> None:
        msg_type = data["type"]
        if msg_type == "join":
            deliveries = self.registry.join(conn_id, data.get("roomId"), data["peerId"], data.get("peerName", ""))
        elif msg_type in ("offer", "answer", "ice-candidate"):
            deliveries = self.registry.relay(conn_id, data)
        elif msg_type == "leave":
            deliveries = self.registry.depart(conn_id)
        elif msg_type == "get-rooms":
            deliveries = [(conn_id, {"type": "rooms-list", "rooms": self.registry.list_rooms()})]
        else:
            deliveries = []

        for target, message in deliveries:
            transport = self.transports.get(target)
            if transport is not None and transport.connected:
                transport.enqueue(json.dumps(message))


class HubTransport(SignalingTransport):
    def __init__(self, hub: SignalingHub, conn_id: str):
        super().__init__()
        self.hub = hub
        self.conn_id = conn_id
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    async def connect(self):
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._pump())
        self.connected = True

    async def send(self, envelope, target=None):
        self.hub.handle(self.conn_id, envelope.to_dict())

    async def close(self):
        self.hub.handle(self.conn_id, {"type": "leave"})
        self.connected = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    def enqueue(self, data: str):
        self._queue.put_nowait(data)

    async def _pump(self):
        while True:
            data = await self._queue.get()
            await self._deliver_raw(data)


async def wait_until(predicate, timeout: float = 2.0):
    """Poll until predicate() is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


# ============ Fixtures ============

@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def alice():
    return PeerIdentity(id="a" * 16, display_name="Alice")


@pytest.fixture
def bob():
    return PeerIdentity(id="b" * 16, display_name="Bob")


@pytest.fixture
def hub():
    return SignalingHub()
