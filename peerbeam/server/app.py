"""
PeerBeam Relay Server

A small WebSocket signaling service. Peers connect to "/", join a room, and
the server relays offers, answers and traversal candidates between members
of the same room. Chat traffic never passes through here; once two peers
have exchanged descriptions they talk directly.

Protocol (JSON text frames):
    -> {"type": "join", "roomId": "ABCD", "peerId": "...", "peerName": "..."}
    <- {"type": "room-joined", "roomId": "ABCD", "peers": [...]}
    <- {"type": "peer-joined" | "peer-left", "peerId": "...", "peerName": "..."}
    -> {"type": "offer" | "answer" | "ice-candidate", "from": "...", "to": "...", ...}
    -> {"type": "get-rooms"}
    <- {"type": "rooms-list", "rooms": [{"id", "peerCount", "peers"}]}
    -> {"type": "leave", "peerId": "...", "peerName": "..."}
"""

import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..exceptions import MalformedEnvelope
from ..mesh.envelope import DIRECTED_TYPES, ErrorEnvelope, RoomsListEnvelope, parse_envelope
from ..mesh.identity import generate_id
from .registry import RegistryService

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(
    service: Optional[RegistryService] = None,
    cors_origins: Optional[List[str]] = None,
) -> FastAPI:
    """Create the relay application around a registry service."""
    service = service or RegistryService()
    started_at = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        logger.info(f"PeerBeam relay v{__version__} started")
        yield
        await service.stop()
        logger.info("PeerBeam relay stopped")

    app = FastAPI(
        title="PeerBeam Relay Server",
        description="WebSocket signaling relay for PeerBeam mesh chat",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.registry = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============ HTTP Endpoints ============

    @app.get("/")
    async def root():
        return {
            "service": "PeerBeam Relay Server",
            "version": __version__,
            "status": "running",
            "endpoints": {
                "health": "/health",
                "rooms": "/rooms",
                "signaling": "/",
            },
        }

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "roomCount": len(service.registry.rooms),
            "connections": service.connection_count,
            "uptime_seconds": time.time() - started_at,
        }

    @app.get("/rooms")
    async def rooms():
        return await service.submit(service.registry.list_rooms)

    # ============ WebSocket Signaling ============

    @app.websocket("/")
    async def signaling_endpoint(websocket: WebSocket):
        await websocket.accept()
        conn_id = generate_id()
        registry = service.registry
        service.attach(conn_id, websocket.send_json)
        logger.debug(f"Connection {conn_id} opened")

        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break

                raw = frame.get("text")
                if raw is None:
                    raw = frame.get("bytes")
                try:
                    data = json.loads(raw)
                    envelope = parse_envelope(data)
                except (TypeError, ValueError, MalformedEnvelope) as e:
                    logger.warning(f"Dropping malformed frame from {conn_id}: {e}")
                    continue

                msg_type = envelope.type
                if msg_type == "join":
                    deliveries = await service.submit(
                        registry.join, conn_id, envelope.room_id, envelope.peer_id, envelope.peer_name
                    )

                elif msg_type in DIRECTED_TYPES:
                    deliveries = await service.submit(registry.relay, conn_id, data)

                elif msg_type == "get-rooms":
                    listing = await service.submit(registry.list_rooms)
                    deliveries = [(conn_id, RoomsListEnvelope(rooms=listing).to_dict())]

                elif msg_type == "leave":
                    deliveries = await service.submit(registry.depart, conn_id)

                else:
                    deliveries = [(conn_id, ErrorEnvelope(
                        code="unsupported",
                        message=f"Unsupported message type: {msg_type}",
                    ).to_dict())]

                await service.dispatch(deliveries)

        except WebSocketDisconnect:
            logger.debug(f"Connection {conn_id} disconnected")
        except Exception as e:
            logger.error(f"Error on connection {conn_id}: {e}")
        finally:
            service.detach(conn_id)
            if service.running:
                deliveries = await service.submit(registry.depart, conn_id)
                await service.dispatch(deliveries)
            logger.debug(f"Connection {conn_id} closed")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", "9876"))
    host = os.getenv("HOST", "0.0.0.0")

    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
