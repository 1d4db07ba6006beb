"""
Peer mesh for PeerBeam.

Provides:
- Signaling envelopes
- Peer identity and chat messages
- Per-peer connection negotiation
- Room-scoped mesh coordination
"""

from .coordinator import MeshCoordinator, PeerInfo
from .envelope import RoomSummary, parse_envelope
from .identity import ChatMessage, PeerIdentity, generate_room_id, normalize_room_id
from .negotiator import CandidateGate, ConnectionNegotiator, ConnectionState
from .rtc import AiortcBackend, RtcBackend

__all__ = [
    # Coordination
    "MeshCoordinator",
    "PeerInfo",
    # Negotiation
    "ConnectionNegotiator",
    "ConnectionState",
    "CandidateGate",
    "RtcBackend",
    "AiortcBackend",
    # Wire
    "RoomSummary",
    "parse_envelope",
    "ChatMessage",
    "PeerIdentity",
    "generate_room_id",
    "normalize_room_id",
]
