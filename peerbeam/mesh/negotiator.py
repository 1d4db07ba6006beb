"""
Per-peer connection negotiation.

A ConnectionNegotiator owns the direct connection and message channel to
exactly one remote peer and drives it through the offer/answer handshake:

    IDLE -> NEGOTIATING -> CONNECTED -> DISCONNECTED
                 ^                           |
                 +------ fresh offer --------+

Traversal candidates that arrive before the remote description is applied
wait in a CandidateGate and are drained, in arrival order, once it is.
"""

import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from ..exceptions import ChannelSendFailure, NegotiationFailure
from .envelope import (
    AnswerEnvelope,
    IceCandidateEnvelope,
    OfferEnvelope,
    SessionDescription,
    WireModel,
)
from .identity import ChatMessage, PeerIdentity, handshake_payload
from .rtc import CHANNEL_LABEL, RtcBackend

logger = logging.getLogger(__name__)

SignalFn = Callable[[WireModel], Awaitable[None]]


class ConnectionState(Enum):
    """Lifecycle of one pairwise connection."""
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class CandidateGate:
    """
    Holds traversal candidates until the remote description is applied.

    While closed, admitted candidates are queued. The owner drains the queue
    with take() after applying the remote description and then calls open();
    from then on admit() tells the caller to apply candidates directly.
    """

    def __init__(self, pending: Optional[Iterable[dict]] = None):
        self._pending: List[dict] = list(pending or [])
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def pending(self) -> List[dict]:
        return list(self._pending)

    def admit(self, candidate: dict) -> bool:
        """Queue the candidate, or return True if it may be applied now."""
        if self._open:
            return True
        self._pending.append(candidate)
        return False

    def take(self) -> List[dict]:
        """Remove and return everything queued so far."""
        taken, self._pending = self._pending, []
        return taken

    def open(self) -> None:
        if self._pending:
            raise RuntimeError("Cannot open gate with queued candidates")
        self._open = True

    def reset(self) -> None:
        """Back to buffering, for a fresh negotiation."""
        self._pending = []
        self._open = False


class ConnectionNegotiator:
    """
    State machine for the connection to one remote peer.

    Usage:
        negotiator = ConnectionNegotiator(identity, "b1c2", "Bob", backend, transport_send)
        await negotiator.initiate()                # offering side
        await negotiator.receive_answer(answer)    # when Bob answers
        await negotiator.receive_candidate(cand)   # any time

    Owners register callbacks:
        on_state_change(negotiator)
        on_message(negotiator, ChatMessage)
        on_failed(negotiator, NegotiationFailure)   (awaited)
    """

    def __init__(
        self,
        identity: PeerIdentity,
        remote_peer_id: str,
        remote_display_name: str,
        backend: RtcBackend,
        signal: SignalFn,
        send_handshake: bool = False,
        pending_candidates: Optional[Iterable[dict]] = None,
    ):
        self.identity = identity
        self.remote_peer_id = remote_peer_id
        self.remote_display_name = remote_display_name
        self.backend = backend
        self.send_handshake = send_handshake

        self.connection: Any = None
        self.channel: Any = None
        self.state = ConnectionState.IDLE
        self.gate = CandidateGate(pending_candidates)

        self._signal = signal
        self._channel_open = False
        self._awaiting_answer = False
        self._closed = False

        self.on_state_change: Optional[Callable[["ConnectionNegotiator"], None]] = None
        self.on_message: Optional[Callable[["ConnectionNegotiator", ChatMessage], None]] = None
        self.on_failed: Optional[Callable[["ConnectionNegotiator", NegotiationFailure], Awaitable[None]]] = None

    def __repr__(self) -> str:
        return f"<ConnectionNegotiator {self.remote_peer_id} {self.state.value}>"

    @property
    def is_open(self) -> bool:
        """True once the channel's open event has fired (and until it closes)."""
        return self._channel_open and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remote_description_set(self) -> bool:
        return self.gate.is_open

    # ============ Negotiation steps ============

    async def initiate(self) -> None:
        """Offer a connection to the remote peer."""
        self._require_live()
        pc = self._open_connection()
        try:
            self._attach_channel(pc.createDataChannel(CHANNEL_LABEL))
            self._set_state(ConnectionState.NEGOTIATING)

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            if self._stale(pc):
                return

            self._awaiting_answer = True
            await self._signal(OfferEnvelope(
                from_=self.identity.id,
                from_name=self.identity.display_name,
                to=self.remote_peer_id,
                offer=self._local_description(pc),
            ))
            logger.debug(f"Sent offer to {self.remote_peer_id}")
        except Exception as e:
            self._raise_unless_stale(pc, "offer", e)

    async def receive_offer(self, from_name: str, offer: dict) -> None:
        """Answer an offer from the remote peer."""
        self._require_live()
        if from_name:
            self.remote_display_name = from_name

        if self._awaiting_answer and not self.remote_description_set:
            # Both sides offered at once; the smaller id yields and answers
            if self.identity.id > self.remote_peer_id:
                logger.info(f"Ignoring crossing offer from {self.remote_peer_id}; waiting for their answer")
                return
            logger.info(f"Crossing offer from {self.remote_peer_id}; discarding our own offer")
            await self._close_handles()

        if self.connection is None or self.state == ConnectionState.DISCONNECTED:
            if self.state == ConnectionState.DISCONNECTED:
                # Candidates for the old connection do not apply to the new one
                self.gate.reset()
            await self._close_handles()
            self._open_connection()

        pc = self.connection
        try:
            self._set_state(ConnectionState.NEGOTIATING)
            await pc.setRemoteDescription(self.backend.description_from_dict(offer))
            await self._drain_candidates(pc)

            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
            if self._stale(pc):
                return

            await self._signal(AnswerEnvelope(
                from_=self.identity.id,
                from_name=self.identity.display_name,
                to=self.remote_peer_id,
                answer=self._local_description(pc),
            ))
            logger.debug(f"Sent answer to {self.remote_peer_id}")
        except Exception as e:
            self._raise_unless_stale(pc, "answer", e)

    async def receive_answer(self, answer: dict) -> None:
        """Apply the remote peer's answer to our offer."""
        if self._closed:
            return
        if not self._awaiting_answer:
            logger.debug(f"Unexpected answer from {self.remote_peer_id}, ignoring")
            return

        pc = self.connection
        try:
            await pc.setRemoteDescription(self.backend.description_from_dict(answer))
            self._awaiting_answer = False
            await self._drain_candidates(pc)
        except Exception as e:
            self._raise_unless_stale(pc, "remote answer", e)

    async def receive_candidate(self, candidate: dict) -> None:
        """Apply a traversal candidate now, or queue it until the remote description is set."""
        if self._closed:
            return
        if not self.gate.admit(candidate):
            logger.debug(f"Queued candidate from {self.remote_peer_id} ({len(self.gate.pending)} pending)")
            return
        await self._apply_candidate(self.connection, candidate)

    # ============ Messaging ============

    def send(self, payload: str) -> None:
        """Send a serialized payload over the channel."""
        if not self.is_open:
            raise ChannelSendFailure(self.remote_peer_id)
        self.channel.send(payload)

    # ============ Teardown ============

    async def teardown(self) -> None:
        """Close channel and connection; later callbacks become no-ops."""
        if self._closed:
            return
        self._closed = True
        self._awaiting_answer = False
        self._channel_open = False
        self.gate.reset()
        await self._close_handles()
        self.state = ConnectionState.DISCONNECTED
        logger.debug(f"Tore down connection to {self.remote_peer_id}")

    # ============ Internals ============

    def _require_live(self) -> None:
        if self._closed:
            raise NegotiationFailure(self.remote_peer_id, "record already torn down")

    def _stale(self, pc: Any) -> bool:
        return self._closed or pc is not self.connection

    def _raise_unless_stale(self, pc: Any, step: str, error: Exception) -> None:
        if self._stale(pc):
            logger.debug(f"Ignoring {step} error on closed connection to {self.remote_peer_id}: {error}")
            return
        if isinstance(error, NegotiationFailure):
            raise error
        raise NegotiationFailure(self.remote_peer_id, f"{step} failed: {error}") from error

    def _local_description(self, pc: Any) -> SessionDescription:
        return SessionDescription(**self.backend.description_to_dict(pc.localDescription))

    def _open_connection(self) -> Any:
        try:
            pc = self.backend.create_connection()
        except Exception as e:
            raise NegotiationFailure(self.remote_peer_id, f"cannot create connection: {e}") from e

        self.connection = pc
        self._channel_open = False
        self.channel = None

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            if not self._stale(pc):
                await self._on_connection_state(pc.connectionState)

        @pc.on("datachannel")
        def on_datachannel(channel):
            if not self._stale(pc):
                self._attach_channel(channel)

        @pc.on("icecandidate")
        async def on_icecandidate(candidate):
            if candidate is None or self._stale(pc):
                return
            await self._signal(IceCandidateEnvelope(
                from_=self.identity.id,
                to=self.remote_peer_id,
                candidate=self.backend.candidate_to_dict(candidate),
            ))

        return pc

    async def _close_handles(self) -> None:
        channel, pc = self.channel, self.connection
        self.channel = None
        self.connection = None
        self._channel_open = False
        self._awaiting_answer = False

        if channel is not None:
            try:
                channel.close()
            except Exception as e:
                logger.debug(f"Channel close error for {self.remote_peer_id}: {e}")
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.debug(f"Connection close error for {self.remote_peer_id}: {e}")

    async def _drain_candidates(self, pc: Any) -> None:
        # Candidates admitted while a drain is suspended land in the queue
        # and are picked up by the next pass, so arrival order holds.
        while True:
            queued = self.gate.take()
            if not queued:
                self.gate.open()
                return
            for candidate in queued:
                await self._apply_candidate(pc, candidate)

    async def _apply_candidate(self, pc: Any, candidate: dict) -> None:
        if self._stale(pc):
            return
        try:
            parsed = self.backend.candidate_from_dict(candidate)
        except Exception as e:
            logger.warning(f"Dropping malformed candidate from {self.remote_peer_id}: {e}")
            return
        if parsed is None:
            return
        try:
            await pc.addIceCandidate(parsed)
        except Exception as e:
            logger.warning(f"Rejected candidate from {self.remote_peer_id}: {e}")

    async def _on_connection_state(self, state: str) -> None:
        logger.info(f"Connection state with {self.remote_display_name or self.remote_peer_id}: {state}")

        if state == "connected":
            self._set_state(ConnectionState.CONNECTED)
        elif state == "failed":
            error = NegotiationFailure(self.remote_peer_id, "connection failed")
            if self.on_failed:
                await self.on_failed(self, error)
            else:
                await self.teardown()
        elif state in ("disconnected", "closed"):
            # The remote description stays applied, so the gate stays as it is
            self._channel_open = False
            self._set_state(ConnectionState.DISCONNECTED)

    def _attach_channel(self, channel: Any) -> None:
        self.channel = channel

        @channel.on("open")
        def on_open():
            if channel is self.channel:
                self._mark_open()

        @channel.on("close")
        def on_close():
            if channel is self.channel and not self._closed:
                logger.info(f"Channel closed with {self.remote_display_name or self.remote_peer_id}")
                self._channel_open = False
                self._set_state(ConnectionState.DISCONNECTED)

        @channel.on("message")
        def on_message(data):
            if channel is self.channel and not self._closed:
                self._on_channel_message(data)

        if getattr(channel, "readyState", None) == "open":
            self._mark_open()

    def _mark_open(self) -> None:
        if self._channel_open or self._closed:
            return
        self._channel_open = True
        logger.info(f"Channel open with {self.remote_display_name or self.remote_peer_id}")

        if self.send_handshake:
            try:
                self.channel.send(json.dumps(handshake_payload(self.identity)))
            except Exception as e:
                logger.warning(f"Handshake to {self.remote_peer_id} failed: {e}")

        self._set_state(ConnectionState.CONNECTED, force_notify=True)

    def _on_channel_message(self, data: Any) -> None:
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse message from {self.remote_peer_id}: {e}")
            return

        if not isinstance(payload, dict):
            logger.warning(f"Ignoring non-object payload from {self.remote_peer_id}")
            return

        if payload.get("type") == "handshake":
            self.remote_display_name = str(payload.get("name") or self.remote_display_name)
            self._notify()
            return

        try:
            message = ChatMessage.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed chat payload from {self.remote_peer_id}: {e}")
            return

        if self.on_message:
            self.on_message(self, message)

    def _set_state(self, state: ConnectionState, force_notify: bool = False) -> None:
        if self._closed:
            return
        changed = state != self.state
        self.state = state
        if changed or force_notify:
            self._notify()

    def _notify(self) -> None:
        if self.on_state_change:
            self.on_state_change(self)
