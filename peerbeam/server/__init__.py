"""
Relay server: room registry and the FastAPI signaling service.
"""

from .registry import RegistryService, Room, RoomRegistry
from .app import create_app

__all__ = [
    "RoomRegistry",
    "RegistryService",
    "Room",
    "create_app",
]
