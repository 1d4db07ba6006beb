"""
Error taxonomy for PeerBeam.

All failures are local to one pairwise connection; nothing here aborts a
room session.
"""


class PeerBeamError(Exception):
    """Base exception for PeerBeam errors."""
    pass


class TransportUnavailable(PeerBeamError):
    """Signaling transport could not connect (refused or timed out)."""
    pass


class MalformedEnvelope(PeerBeamError):
    """Inbound signaling data could not be parsed."""
    pass


class UnmatchedPeer(PeerBeamError):
    """Envelope references a peer with no local record."""

    def __init__(self, peer_id: str):
        super().__init__(f"No connection record for peer {peer_id}")
        self.peer_id = peer_id


class NegotiationFailure(PeerBeamError):
    """Pairwise connection could not be created or reached a failed state."""

    def __init__(self, peer_id: str, reason: str = ""):
        super().__init__(f"Negotiation with {peer_id} failed: {reason}" if reason else f"Negotiation with {peer_id} failed")
        self.peer_id = peer_id
        self.reason = reason


class ChannelSendFailure(PeerBeamError):
    """Message channel was not open at send time."""

    def __init__(self, peer_id: str):
        super().__init__(f"Channel to {peer_id} is not open")
        self.peer_id = peer_id
