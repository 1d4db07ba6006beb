"""
Room-scoped mesh coordination.

The MeshCoordinator owns the set of ConnectionNegotiators for the current
room. It reacts to membership envelopes by spawning negotiators, routes
negotiation envelopes to the right one, keeps a roster of peers whose
channels are open, and fans chat messages out to every open channel.

Tie-break rules (no pair ever keeps two records):
- room-joined: the newcomer offers to every member already present;
  incumbents only ever answer.
- announce: whoever sees an announce from an unknown peer offers to it;
  crossing offers are settled inside the negotiator.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set

from ..exceptions import ChannelSendFailure, NegotiationFailure, UnmatchedPeer
from .envelope import (
    AnswerEnvelope,
    GetRoomsEnvelope,
    IceCandidateEnvelope,
    JoinEnvelope,
    LeaveEnvelope,
    OfferEnvelope,
    RoomSummary,
    WireModel,
)
from .identity import ChatMessage, PeerIdentity, generate_room_id, normalize_room_id
from .negotiator import ConnectionNegotiator
from .rtc import AiortcBackend, RtcBackend

if TYPE_CHECKING:
    from ..transport.base import SignalingTransport

logger = logging.getLogger(__name__)

MAX_PARKED_CANDIDATES = 32


@dataclass
class PeerInfo:
    """A roster entry."""
    id: str
    name: str
    connected: bool = True

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "connected": self.connected}


class MeshCoordinator:
    """
    Full-mesh chat session over a signaling transport.

    Usage:
        mesh = MeshCoordinator(PeerIdentity.generate("alice"), RelayTransport(url))
        mesh.on_message = lambda msg: print(msg.sender_name, msg.text)
        await mesh.connect()
        room_id = await mesh.create_or_join()
        mesh.send_message("hello")
        await mesh.leave()
    """

    def __init__(
        self,
        identity: PeerIdentity,
        transport: "SignalingTransport",
        backend: Optional[RtcBackend] = None,
    ):
        self.identity = identity
        self.transport = transport
        self.backend = backend or AiortcBackend()
        self.room_id: Optional[str] = None

        self._negotiators: Dict[str, ConnectionNegotiator] = {}
        self._early_candidates: Dict[str, List[dict]] = {}
        self._departed: Set[str] = set()
        self._rooms_waiters: List[asyncio.Future] = []

        # Callbacks
        self.on_message: Optional[Callable[[ChatMessage], None]] = None
        self.on_peer_join: Optional[Callable[[str, str], None]] = None
        self.on_peer_leave: Optional[Callable[[str, str], None]] = None
        self.on_peer_failed: Optional[Callable[[str, str], None]] = None
        self.on_roster_change: Optional[Callable[[List[PeerInfo]], None]] = None
        self.on_room_joined: Optional[Callable[[str, List[dict]], None]] = None
        self.on_rooms_list: Optional[Callable[[List[RoomSummary]], None]] = None

        transport.on_receive(self.handle_envelope)

    # ============ Public API ============

    async def connect(self) -> None:
        """Connect the signaling transport. Raises TransportUnavailable."""
        await self.transport.connect()

    async def join(self, room_id: str) -> None:
        """Join a room; connections to its members follow asynchronously."""
        room_id = normalize_room_id(room_id)
        if not room_id:
            raise ValueError("room_id is required")

        if self.room_id:
            # The server treats a re-join as depart + join
            await self._teardown_all()

        self.room_id = room_id
        await self.transport.send(JoinEnvelope(
            room_id=room_id,
            peer_id=self.identity.id,
            peer_name=self.identity.display_name,
        ))
        logger.info(f"Joining room {room_id} as {self.identity.display_name}")

    async def create_or_join(self, room_id: Optional[str] = None) -> str:
        """Join the given room, or a freshly generated one. Returns the room id."""
        room_id = normalize_room_id(room_id) or generate_room_id()
        await self.join(room_id)
        return room_id

    def send_message(self, text: str) -> ChatMessage:
        """Send text to every open channel. Closed channels are skipped."""
        message = ChatMessage.create(self.identity, text)
        payload = json.dumps(message.to_dict())

        sent = 0
        for negotiator in list(self._negotiators.values()):
            if not negotiator.is_open:
                continue
            try:
                negotiator.send(payload)
                sent += 1
            except ChannelSendFailure as e:
                logger.debug(f"Skipped {negotiator.remote_peer_id}: {e}")
            except Exception as e:
                logger.warning(f"Send to {negotiator.remote_peer_id} failed: {e}")

        logger.debug(f"Message {message.id} sent to {sent} peer(s)")
        return message

    async def get_rooms(self) -> None:
        """Request a room listing; the reply goes to on_rooms_list."""
        await self.transport.send(GetRoomsEnvelope())

    async def list_rooms(self, timeout: float = 5.0) -> List[RoomSummary]:
        """Request a room listing and wait for the reply."""
        waiter = asyncio.get_running_loop().create_future()
        self._rooms_waiters.append(waiter)
        try:
            await self.get_rooms()
            return await asyncio.wait_for(waiter, timeout=timeout)
        finally:
            if waiter in self._rooms_waiters:
                self._rooms_waiters.remove(waiter)

    async def leave(self) -> None:
        """Leave the room, tear down every connection and release the transport."""
        if self.room_id:
            try:
                await self.transport.send(LeaveEnvelope(
                    peer_id=self.identity.id,
                    peer_name=self.identity.display_name,
                ))
            except Exception as e:
                logger.debug(f"Leave signal not delivered: {e}")

        await self._teardown_all()
        self.room_id = None

        for waiter in self._rooms_waiters:
            if not waiter.done():
                waiter.cancel()
        self._rooms_waiters.clear()

        await self.transport.close()
        logger.info("Left room")

    def roster(self) -> List[PeerInfo]:
        """Peers whose channel is open."""
        return [
            PeerInfo(id=n.remote_peer_id, name=n.remote_display_name)
            for n in self._negotiators.values()
            if n.is_open
        ]

    def get(self, peer_id: str) -> ConnectionNegotiator:
        negotiator = self._negotiators.get(peer_id)
        if negotiator is None:
            raise UnmatchedPeer(peer_id)
        return negotiator

    @property
    def negotiators(self) -> Dict[str, ConnectionNegotiator]:
        return dict(self._negotiators)

    # ============ Envelope dispatch ============

    async def handle_envelope(self, envelope: WireModel) -> None:
        """Route one inbound signaling envelope."""
        msg_type = envelope.type

        if msg_type == "room-joined":
            self.room_id = envelope.room_id
            if self.on_room_joined:
                self.on_room_joined(envelope.room_id, [p.to_dict() for p in envelope.peers])
            for peer in envelope.peers:
                if peer.peer_id != self.identity.id:
                    await self._initiate(peer.peer_id, peer.peer_name)

        elif msg_type == "peer-joined":
            # Incumbents wait for the newcomer's offer
            self._departed.discard(envelope.peer_id)
            if envelope.peer_id != self.identity.id and self.on_peer_join:
                self.on_peer_join(envelope.peer_id, envelope.peer_name)

        elif msg_type == "announce":
            if envelope.peer_id == self.identity.id or envelope.peer_id in self._negotiators:
                return
            if self.on_peer_join:
                self.on_peer_join(envelope.peer_id, envelope.peer_name)
            await self._initiate(envelope.peer_id, envelope.peer_name)

        elif msg_type in ("peer-left", "leave"):
            if envelope.peer_id != self.identity.id:
                await self._remove_peer(envelope.peer_id, envelope.peer_name)

        elif msg_type == "offer":
            if envelope.to == self.identity.id:
                await self._handle_offer(envelope)

        elif msg_type == "answer":
            if envelope.to == self.identity.id:
                await self._handle_answer(envelope)

        elif msg_type == "ice-candidate":
            if envelope.to == self.identity.id:
                await self._handle_candidate(envelope)

        elif msg_type == "rooms-list":
            for waiter in self._rooms_waiters:
                if not waiter.done():
                    waiter.set_result(envelope.rooms)
            if self.on_rooms_list:
                self.on_rooms_list(envelope.rooms)

        elif msg_type == "error":
            logger.warning(f"Signaling error {envelope.code}: {envelope.message}")

        else:
            logger.debug(f"Ignoring {msg_type} envelope")

    async def _handle_offer(self, envelope: OfferEnvelope) -> None:
        negotiator = self._get_or_create(envelope.from_, envelope.from_name)
        await self._run(negotiator, negotiator.receive_offer(envelope.from_name, envelope.offer.to_dict()))

    async def _handle_answer(self, envelope: AnswerEnvelope) -> None:
        try:
            negotiator = self.get(envelope.from_)
        except UnmatchedPeer as e:
            logger.debug(f"Dropping stale answer: {e}")
            return
        await self._run(negotiator, negotiator.receive_answer(envelope.answer.to_dict()))

    async def _handle_candidate(self, envelope: IceCandidateEnvelope) -> None:
        negotiator = self._negotiators.get(envelope.from_)
        if negotiator is None:
            if envelope.from_ in self._departed:
                logger.debug(f"Dropping candidate from departed peer {envelope.from_}")
                return
            # Parked until an offer from this peer creates its record
            parked = self._early_candidates.setdefault(envelope.from_, [])
            if len(parked) >= MAX_PARKED_CANDIDATES:
                logger.warning(f"Too many early candidates from {envelope.from_}, dropping")
                return
            parked.append(envelope.candidate)
            return
        await negotiator.receive_candidate(envelope.candidate)

    # ============ Negotiator lifecycle ============

    def _get_or_create(self, peer_id: str, peer_name: str) -> ConnectionNegotiator:
        negotiator = self._negotiators.get(peer_id)
        if negotiator is not None:
            return negotiator

        self._departed.discard(peer_id)
        negotiator = ConnectionNegotiator(
            identity=self.identity,
            remote_peer_id=peer_id,
            remote_display_name=peer_name,
            backend=self.backend,
            signal=self.transport.send,
            send_handshake=self.transport.needs_handshake,
            pending_candidates=self._early_candidates.pop(peer_id, None),
        )
        negotiator.on_state_change = self._on_negotiator_change
        negotiator.on_message = self._on_negotiator_message
        negotiator.on_failed = self._fail
        self._negotiators[peer_id] = negotiator
        return negotiator

    async def _initiate(self, peer_id: str, peer_name: str) -> None:
        if peer_id in self._negotiators:
            return
        negotiator = self._get_or_create(peer_id, peer_name)
        await self._run(negotiator, negotiator.initiate())

    async def _run(self, negotiator: ConnectionNegotiator, step) -> None:
        try:
            await step
        except NegotiationFailure as e:
            await self._fail(negotiator, e)

    async def _fail(self, negotiator: ConnectionNegotiator, error: NegotiationFailure) -> None:
        logger.warning(f"{error}")
        peer_id = negotiator.remote_peer_id
        if self._negotiators.get(peer_id) is negotiator:
            del self._negotiators[peer_id]
            self._departed.add(peer_id)
        self._early_candidates.pop(peer_id, None)
        await negotiator.teardown()

        if self.on_peer_failed:
            self.on_peer_failed(peer_id, negotiator.remote_display_name)
        self._notify_roster()

    async def _remove_peer(self, peer_id: str, peer_name: str = "") -> None:
        self._early_candidates.pop(peer_id, None)
        negotiator = self._negotiators.pop(peer_id, None)
        if negotiator is None:
            return

        self._departed.add(peer_id)
        await negotiator.teardown()
        logger.info(f"{peer_name or negotiator.remote_display_name or peer_id} left")
        if self.on_peer_leave:
            self.on_peer_leave(peer_id, peer_name or negotiator.remote_display_name)
        self._notify_roster()

    async def _teardown_all(self) -> None:
        negotiators = list(self._negotiators.values())
        self._negotiators.clear()
        self._early_candidates.clear()
        self._departed.update(n.remote_peer_id for n in negotiators)
        for negotiator in negotiators:
            await negotiator.teardown()
        if negotiators:
            self._notify_roster()

    def _on_negotiator_change(self, negotiator: ConnectionNegotiator) -> None:
        if self._negotiators.get(negotiator.remote_peer_id) is negotiator:
            self._notify_roster()

    def _on_negotiator_message(self, negotiator: ConnectionNegotiator, message: ChatMessage) -> None:
        if self.on_message:
            self.on_message(message)

    def _notify_roster(self) -> None:
        if self.on_roster_change:
            self.on_roster_change(self.roster())
