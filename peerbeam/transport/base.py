"""
Signaling transport interface.

A signaling transport relays small envelopes between peers sharing a room.
Every realization offers the same four operations; anything specific to a
realization happens in its constructor or inside send().
"""

import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Union

from ..exceptions import MalformedEnvelope
from ..mesh.envelope import WireModel, parse_envelope

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[WireModel], Awaitable[None]]


class SignalingTransport(ABC):
    """Best-effort envelope delivery between named peers in a room."""

    # Whether peers learn display names only through the channel handshake
    needs_handshake: bool = False

    def __init__(self):
        self.connected = False
        self._handler: Optional[EnvelopeHandler] = None

    @abstractmethod
    async def connect(self) -> None:
        """Open the transport. Raises TransportUnavailable on failure."""
        pass

    @abstractmethod
    async def send(self, envelope: WireModel, target: Optional[str] = None) -> None:
        """Deliver an envelope; directed envelopes name their recipient in `to`."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the transport."""
        pass

    def on_receive(self, handler: EnvelopeHandler) -> None:
        """Set the handler for inbound envelopes."""
        self._handler = handler

    async def _deliver(self, envelope: WireModel) -> None:
        if not self._handler:
            return
        try:
            await self._handler(envelope)
        except Exception:
            logger.exception(f"Error handling {envelope.type} envelope")

    async def _deliver_raw(self, data: Union[str, bytes]) -> None:
        try:
            envelope = parse_envelope(data)
        except MalformedEnvelope as e:
            logger.warning(f"Dropping malformed envelope: {e}")
            return
        await self._deliver(envelope)
