"""
Signaling envelopes.

Envelopes are the small JSON frames exchanged over a signaling transport
while peers discover each other and negotiate their direct connections.
Each envelope type carries only the fields its case needs; wire keys are
camelCase.

    join          client -> server    roomId, peerId, peerName
    room-joined   server -> client    roomId, peers
    peer-joined   server -> room      peerId, peerName
    peer-left     server -> room      peerId, peerName
    offer/answer  relayed             from, fromName, to, offer/answer
    ice-candidate relayed             from, to, candidate
    get-rooms     client -> server
    rooms-list    server -> client    rooms
    announce      local bus           peerId, peerName
    leave         local bus / server  peerId, peerName
    error         server -> client    code, message
"""

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from ..exceptions import MalformedEnvelope


class WireModel(BaseModel):
    """Base for everything that travels over a signaling transport."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


# ============ Payload parts ============

class PeerRef(WireModel):
    """A room member as listed in room-joined."""
    peer_id: str = Field(..., alias="peerId")
    peer_name: str = Field(default="", alias="peerName")


class MemberRef(WireModel):
    """A room member as listed in rooms-list."""
    id: str
    name: str = ""


class RoomSummary(WireModel):
    """Snapshot of one room for discovery."""
    id: str
    peer_count: int = Field(..., alias="peerCount")
    peers: List[MemberRef] = Field(default_factory=list)


class SessionDescription(WireModel):
    """An offer or answer session description."""
    type: Literal["offer", "answer"]
    sdp: str


# ============ Envelopes ============

class JoinEnvelope(WireModel):
    type: Literal["join"] = "join"
    room_id: Optional[str] = Field(default=None, alias="roomId")
    peer_id: str = Field(..., alias="peerId")
    peer_name: str = Field(default="", alias="peerName")


class RoomJoinedEnvelope(WireModel):
    type: Literal["room-joined"] = "room-joined"
    room_id: str = Field(..., alias="roomId")
    peers: List[PeerRef] = Field(default_factory=list)


class PeerJoinedEnvelope(WireModel):
    type: Literal["peer-joined"] = "peer-joined"
    peer_id: str = Field(..., alias="peerId")
    peer_name: str = Field(default="", alias="peerName")


class PeerLeftEnvelope(WireModel):
    type: Literal["peer-left"] = "peer-left"
    peer_id: str = Field(..., alias="peerId")
    peer_name: str = Field(default="", alias="peerName")


class OfferEnvelope(WireModel):
    type: Literal["offer"] = "offer"
    from_: str = Field(..., alias="from")
    from_name: str = Field(default="", alias="fromName")
    to: str
    offer: SessionDescription


class AnswerEnvelope(WireModel):
    type: Literal["answer"] = "answer"
    from_: str = Field(..., alias="from")
    from_name: str = Field(default="", alias="fromName")
    to: str
    answer: SessionDescription


class IceCandidateEnvelope(WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    from_: str = Field(..., alias="from")
    to: str
    candidate: Dict[str, Any]


class GetRoomsEnvelope(WireModel):
    type: Literal["get-rooms"] = "get-rooms"


class RoomsListEnvelope(WireModel):
    type: Literal["rooms-list"] = "rooms-list"
    rooms: List[RoomSummary] = Field(default_factory=list)


class AnnounceEnvelope(WireModel):
    type: Literal["announce"] = "announce"
    peer_id: str = Field(..., alias="peerId")
    peer_name: str = Field(default="", alias="peerName")


class LeaveEnvelope(WireModel):
    type: Literal["leave"] = "leave"
    peer_id: str = Field(..., alias="peerId")
    peer_name: str = Field(default="", alias="peerName")


class ErrorEnvelope(WireModel):
    type: Literal["error"] = "error"
    code: str
    message: str = ""


Envelope = Annotated[
    Union[
        JoinEnvelope,
        RoomJoinedEnvelope,
        PeerJoinedEnvelope,
        PeerLeftEnvelope,
        OfferEnvelope,
        AnswerEnvelope,
        IceCandidateEnvelope,
        GetRoomsEnvelope,
        RoomsListEnvelope,
        AnnounceEnvelope,
        LeaveEnvelope,
        ErrorEnvelope,
    ],
    Field(discriminator="type"),
]

# Envelopes addressed to a single peer and relayed verbatim
DIRECTED_TYPES = frozenset({"offer", "answer", "ice-candidate"})

_adapter = TypeAdapter(Envelope)


def parse_envelope(data: Union[str, bytes, dict]) -> WireModel:
    """
    Parse raw signaling data into an envelope.

    Raises:
        MalformedEnvelope: if the data is not JSON, has an unknown type,
            or is missing fields its type requires.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedEnvelope(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedEnvelope(f"Envelope must be an object, got {type(data).__name__}")

    try:
        return _adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedEnvelope(f"Invalid {data.get('type', 'untyped')} envelope: {e.error_count()} error(s)") from e


def envelope_target(envelope: WireModel) -> Optional[str]:
    """Recipient peer id for directed envelopes, None for everything else."""
    return getattr(envelope, "to", None) if envelope.type in DIRECTED_TYPES else None
