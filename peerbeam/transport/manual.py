"""
Manual offline signaling for exactly two peers.

No server and no shared process: the creator's offer and the joiner's
answer are turned into copy/paste codes that the users exchange by any
means they like. A code is base64 of {type, sdp, name, id}; the session
description already contains every gathered candidate, so candidate
envelopes are not exchanged separately.
"""

import asyncio
import base64
import binascii
import json
import logging
from typing import Callable, Optional

from ..exceptions import MalformedEnvelope
from ..mesh.envelope import (
    AnswerEnvelope,
    OfferEnvelope,
    PeerRef,
    RoomJoinedEnvelope,
    SessionDescription,
    WireModel,
)
from ..mesh.identity import normalize_room_id
from .base import SignalingTransport

logger = logging.getLogger(__name__)

# Record key for the remote peer until its real id is known
REMOTE_PLACEHOLDER_ID = "manual-peer"
MANUAL_ROOM_ID = "MANUAL"


def encode_code(description: dict, name: str, peer_id: str) -> str:
    """Encode a session description as a shareable code."""
    data = {
        "type": description["type"],
        "sdp": description["sdp"],
        "name": name,
        "id": peer_id,
    }
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


def decode_code(code: str) -> dict:
    """
    Decode a shareable code.

    Raises:
        MalformedEnvelope: if the code is not a valid description.
    """
    try:
        data = json.loads(base64.b64decode("".join(code.split()), validate=True))
    except (binascii.Error, ValueError) as e:
        raise MalformedEnvelope(f"Invalid code: {e}") from e

    if not isinstance(data, dict) or data.get("type") not in ("offer", "answer") or not data.get("sdp"):
        raise MalformedEnvelope("Code does not contain an offer or answer")
    return data


class ManualTransport(SignalingTransport):
    """
    Copy/paste signaling.

    Usage (creator):
        transport = ManualTransport(creator=True)
        mesh = MeshCoordinator(identity, transport)
        await mesh.connect()
        await mesh.join("manual")
        offer_code = await transport.next_code()     # give this to the joiner
        await transport.apply_code(answer_code)      # paste the joiner's reply

    Usage (joiner):
        transport = ManualTransport(creator=False)
        ...
        await transport.apply_code(offer_code)
        answer_code = await transport.next_code()    # give this back
    """

    needs_handshake = True

    def __init__(self, creator: bool):
        super().__init__()
        self.creator = creator
        self.local_peer_id: Optional[str] = None
        self.remote_peer_id: Optional[str] = None
        self._codes: asyncio.Queue = asyncio.Queue()

        self.on_code: Optional[Callable[[str], None]] = None

    async def connect(self) -> None:
        self.connected = True

    async def send(self, envelope: WireModel, target: Optional[str] = None) -> None:
        msg_type = envelope.type

        if msg_type == "join":
            self.local_peer_id = envelope.peer_id
            room_id = normalize_room_id(envelope.room_id) or MANUAL_ROOM_ID
            peers = [PeerRef(peer_id=REMOTE_PLACEHOLDER_ID)] if self.creator else []
            await self._deliver(RoomJoinedEnvelope(room_id=room_id, peers=peers))

        elif msg_type in ("offer", "answer"):
            self.remote_peer_id = envelope.to
            description = getattr(envelope, msg_type)
            code = encode_code(description.to_dict(), envelope.from_name, envelope.from_)
            self._codes.put_nowait(code)
            if self.on_code:
                self.on_code(code)

        else:
            logger.debug(f"Manual exchange does not carry {msg_type} envelopes")

    async def close(self) -> None:
        self.connected = False

    async def next_code(self, timeout: Optional[float] = None) -> str:
        """Wait for the next code to hand to the other user."""
        return await asyncio.wait_for(self._codes.get(), timeout=timeout)

    async def apply_code(self, code: str) -> None:
        """
        Feed a code pasted by the user.

        Raises:
            MalformedEnvelope: if the code cannot be decoded or does not fit
                this side (creators take answers, joiners take offers).
        """
        data = decode_code(code)
        expected = "answer" if self.creator else "offer"
        if data["type"] != expected:
            raise MalformedEnvelope(f"Expected an {expected} code, got an {data['type']} code")

        sender = self.remote_peer_id or str(data.get("id") or REMOTE_PLACEHOLDER_ID)
        description = SessionDescription(type=data["type"], sdp=data["sdp"])
        fields = dict(from_=sender, from_name=str(data.get("name") or ""), to=self.local_peer_id or "")

        if data["type"] == "offer":
            envelope = OfferEnvelope(offer=description, **fields)
        else:
            envelope = AnswerEnvelope(answer=description, **fields)
        await self._deliver(envelope)
