"""
PeerBeam - Peer-to-peer mesh chat

Every participant in a room holds a direct connection to every other
participant. A signaling transport (relay server, in-process bus or
copy/paste codes) is only used to find peers and negotiate connections.

Example:
    >>> from peerbeam import MeshCoordinator, PeerIdentity, RelayTransport
    >>> mesh = MeshCoordinator(PeerIdentity.generate("alice"), RelayTransport("ws://localhost:9876"))
    >>> await mesh.connect()
    >>> room_id = await mesh.create_or_join()
    >>> mesh.send_message("hello")
"""

__version__ = "1.0.0"

from .config import Config, get_config
from .mesh import ChatMessage, MeshCoordinator, PeerIdentity
from .transport import LocalBusTransport, ManualTransport, RelayTransport

__all__ = [
    "__version__",
    "Config",
    "get_config",
    "ChatMessage",
    "MeshCoordinator",
    "PeerIdentity",
    "LocalBusTransport",
    "ManualTransport",
    "RelayTransport",
]
