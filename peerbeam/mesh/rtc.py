"""
Connection primitive contract.

The negotiator drives connections through an RtcBackend, which creates
peer connections and converts session descriptions and traversal
candidates to and from their wire dictionaries. The default backend is
aiortc: RTCPeerConnection exposes createOffer / createAnswer /
setLocalDescription / setRemoteDescription / addIceCandidate and emits
connectionstatechange, datachannel and icecandidate events; RTCDataChannel
emits open, close and message.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]

CHANNEL_LABEL = "chat"


class RtcBackend(ABC):
    """Factory and codec for the underlying connection primitive."""

    @abstractmethod
    def create_connection(self) -> Any:
        """Create a new peer connection handle."""
        pass

    @abstractmethod
    def description_from_dict(self, data: dict) -> Any:
        pass

    @abstractmethod
    def description_to_dict(self, description: Any) -> dict:
        pass

    @abstractmethod
    def candidate_from_dict(self, data: dict) -> Optional[Any]:
        """Parse a wire candidate; None for an end-of-candidates marker.

        Raises ValueError for a candidate that cannot be parsed.
        """
        pass

    @abstractmethod
    def candidate_to_dict(self, candidate: Any) -> dict:
        pass


class AiortcBackend(RtcBackend):
    """RtcBackend built on aiortc."""

    def __init__(self, ice_servers: Optional[Sequence[str]] = None):
        self.ice_servers: List[str] = list(ice_servers if ice_servers is not None else DEFAULT_ICE_SERVERS)

    def _configuration(self):
        return RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in self.ice_servers]
        )

    def create_connection(self):
        return RTCPeerConnection(configuration=self._configuration())

    def description_from_dict(self, data: dict):
        return RTCSessionDescription(sdp=data["sdp"], type=data["type"])

    def description_to_dict(self, description) -> dict:
        return {"type": description.type, "sdp": description.sdp}

    def candidate_from_dict(self, data: dict):
        value = data.get("candidate")
        if not value:
            return None
        if not isinstance(value, str):
            raise ValueError(f"candidate must be a string, got {type(value).__name__}")

        sdp = value.strip()
        if not sdp:
            return None
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]

        try:
            candidate = candidate_from_sdp(sdp)
        except (AssertionError, IndexError, ValueError) as e:
            raise ValueError(f"unparseable candidate {value!r}") from e
        candidate.sdpMid = data.get("sdpMid")
        candidate.sdpMLineIndex = data.get("sdpMLineIndex")
        return candidate

    def candidate_to_dict(self, candidate) -> dict:
        return {
            "candidate": "candidate:" + candidate_to_sdp(candidate),
            "sdpMid": candidate.sdpMid,
            "sdpMLineIndex": candidate.sdpMLineIndex,
        }
