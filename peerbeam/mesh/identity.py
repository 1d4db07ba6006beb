"""
Peer identity and chat messages.
"""

import secrets
import string
import time
from dataclasses import dataclass, field
from typing import Optional

ROOM_ID_ALPHABET = string.ascii_uppercase + string.digits
ROOM_ID_LENGTH = 6


def generate_id(length: int = 16) -> str:
    """Opaque random token for peers and messages."""
    return secrets.token_hex(length // 2)


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    """Short upper-case alphanumeric room code, e.g. 'K3F9QZ'."""
    return "".join(secrets.choice(ROOM_ID_ALPHABET) for _ in range(length))


def normalize_room_id(room_id: Optional[str]) -> str:
    """Room ids are case-insensitive; compare them upper-cased."""
    return (room_id or "").strip().upper()


@dataclass(frozen=True)
class PeerIdentity:
    """Identity of this peer for the lifetime of a session."""
    id: str
    display_name: str

    @classmethod
    def generate(cls, display_name: str) -> "PeerIdentity":
        return cls(id=generate_id(), display_name=display_name)


@dataclass(frozen=True)
class ChatMessage:
    """A chat message as sent over the data channel."""
    id: str
    sender: str
    sender_name: str
    text: str
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def create(cls, identity: PeerIdentity, text: str) -> "ChatMessage":
        return cls(
            id=generate_id(),
            sender=identity.id,
            sender_name=identity.display_name,
            text=text,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender": self.sender,
            "senderName": self.sender_name,
            "text": self.text,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        return cls(
            id=str(data["id"]),
            sender=str(data["sender"]),
            sender_name=str(data.get("senderName", "")),
            text=str(data["text"]),
            timestamp=int(data.get("timestamp", 0)),
        )


def handshake_payload(identity: PeerIdentity) -> dict:
    """One-time payload that tells the remote side our display name."""
    return {"type": "handshake", "name": identity.display_name, "id": identity.id}
