"""
Signaling transports for PeerBeam.

- RelayTransport: rooms on a relay server over a WebSocket
- LocalBusTransport: peers in the same process
- ManualTransport: two peers exchanging copy/paste codes
"""

from .base import SignalingTransport
from .local import LocalBus, LocalBusTransport, get_local_bus
from .manual import ManualTransport, decode_code, encode_code
from .relay import RelayTransport

__all__ = [
    "SignalingTransport",
    "RelayTransport",
    "LocalBus",
    "LocalBusTransport",
    "get_local_bus",
    "ManualTransport",
    "encode_code",
    "decode_code",
]
