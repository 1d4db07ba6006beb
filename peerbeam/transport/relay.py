"""
Server-relayed signaling transport.

Connects to a PeerBeam relay server over a WebSocket. The server keeps
room membership, answers room listings and forwards directed envelopes
to their recipient.
"""

import asyncio
import logging
from typing import Callable, Optional

import aiohttp

from ..exceptions import TransportUnavailable
from ..mesh.envelope import WireModel
from .base import SignalingTransport

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 5.0


class RelayTransport(SignalingTransport):
    """WebSocket client for the relay server."""

    def __init__(self, url: str, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        super().__init__()
        self.url = url
        self.connect_timeout = connect_timeout
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._session: Optional[aiohttp.ClientSession] = None
        self._receive_task: Optional[asyncio.Task] = None

        self.on_disconnect: Optional[Callable[[], None]] = None

    async def connect(self) -> None:
        """Connect to the relay, giving up after connect_timeout seconds."""
        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(session.ws_connect(self.url), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            await session.close()
            raise TransportUnavailable(f"Timed out connecting to {self.url}") from e
        except (aiohttp.ClientError, OSError) as e:
            await session.close()
            raise TransportUnavailable(f"Cannot connect to {self.url}: {e}") from e

        self._session = session
        self._ws = ws
        self.connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info(f"Connected to signaling server {self.url}")

    async def send(self, envelope: WireModel, target: Optional[str] = None) -> None:
        if not self._ws or self._ws.closed:
            logger.debug(f"Not connected, dropping {envelope.type} envelope")
            return
        try:
            await self._ws.send_str(envelope.to_json())
        except (aiohttp.ClientError, ConnectionResetError) as e:
            logger.warning(f"Relay send failed: {e}")

    async def close(self) -> None:
        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            await self._ws.close()
            self._ws = None
        if self._session:
            await self._session.close()
            self._session = None

        self.connected = False

    async def _receive_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._deliver_raw(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Relay socket error: {self._ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Relay receive error: {e}")
        finally:
            self.connected = False
            logger.info("Disconnected from signaling server")
            if self.on_disconnect:
                self.on_disconnect()
