"""
ASGI Application for the Signaling Server

Design Decision: Websocket Framework
====================================

Options Considered:
1. websockets.serve - minimal, but status endpoints need a second server
2. aiohttp - websockets and HTTP, but a second async stack to learn
3. FastAPI/Starlette - websockets and JSON endpoints in one app, runs on uvicorn

Decision: FastAPI
- One app serves the relay websockets and the status endpoints
- Pydantic models document the JSON responses
- Test client drives websockets in-process

Endpoints:
- WS  /server/webrtc    - client can open direct channels
- WS  /server/fallback  - client can only use relayed delivery
- GET /                 - name and version
- GET /status           - room and connection counts
- GET /rooms            - room key -> member count
"""

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from starlette.websockets import WebSocketState

from .. import __version__
from ..config import Config
from ..signaling import ClientInfo, SignalingServer, SignalingTransport

logger = logging.getLogger(__name__)


# === Pydantic Models ===

class ServerStatus(BaseModel):
    """Signaling server status response."""
    rooms: int
    connections: int
    keepalive_interval: float


class RoomInfo(BaseModel):
    """Size of one room."""
    room_key: str
    members: int


# === Websocket adapter ===

class WebSocketTransport(SignalingTransport):
    """SignalingTransport over a Starlette websocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, message: Dict[str, Any]):
        if not self.is_open:
            return
        try:
            await self.websocket.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as e:
            # Socket closed between the state check and the write
            logger.debug(f"Send on closing websocket dropped: {e}")
            self._closed = True

    async def close(self):
        if not self.is_open:
            self._closed = True
            return
        self._closed = True
        try:
            await self.websocket.close()
        except RuntimeError as e:
            logger.debug(f"Websocket already closed: {e}")


def client_info(websocket: WebSocket, variant: str) -> ClientInfo:
    """Build ClientInfo from the websocket handshake."""
    return ClientInfo(
        remote_address=websocket.client.host if websocket.client else None,
        headers={k.lower(): v for k, v in websocket.headers.items()},
        direct_channel_capable='webrtc' in variant,
    )


# === API Creation ===

def create_app(config: Config = None, server: SignalingServer = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        config: Server configuration (defaults if not provided)
        server: SignalingServer to expose (built from config if not provided)

    Returns:
        FastAPI application
    """
    config = config or Config()
    if server is None:
        server = SignalingServer(
            keepalive_interval=config.keepalive_interval,
            trust_proxy=config.trust_proxy,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handle startup and shutdown."""
        logger.info("Signaling server starting...")
        yield
        await server.shutdown()
        logger.info("Signaling server stopped")

    app = FastAPI(
        title="Dropzone Signaling API",
        description="Room-scoped signaling relay for local peer-to-peer transfers",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.signaling = server

    # === Endpoints ===

    @app.get("/", tags=["General"])
    async def root():
        """API root - basic info."""
        return {
            "name": "Dropzone Signaling Server",
            "version": __version__,
            "status": "running",
        }

    @app.get("/status", response_model=ServerStatus, tags=["Server"])
    async def get_status():
        """Get room and connection counts."""
        return ServerStatus(**server.get_stats())

    @app.get("/rooms", response_model=List[RoomInfo], tags=["Server"])
    async def list_rooms():
        """List rooms and their sizes."""
        return [
            RoomInfo(room_key=key, members=size)
            for key, size in sorted(server.registry.room_sizes().items())
        ]

    @app.websocket("/server/{variant:path}")
    async def signaling(websocket: WebSocket, variant: str):
        """Signaling websocket. `variant` is `webrtc` or `fallback`."""
        await websocket.accept()
        transport = WebSocketTransport(websocket)
        record = await server.on_connect(transport, client_info(websocket, variant))

        try:
            while transport.is_open:
                message = await websocket.receive()
                if message['type'] == 'websocket.disconnect':
                    break
                raw = message.get('text')
                if raw is None:
                    raw = message.get('bytes')
                await server.on_message(record, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await server.on_close(record)

    return app


async def run_server(config: Config):
    """
    Run the signaling server until interrupted.

    Args:
        config: Server configuration (host, port, keepalive...)
    """
    import uvicorn

    app = create_app(config)

    uvicorn_config = uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        proxy_headers=config.trust_proxy,
    )
    server = uvicorn.Server(uvicorn_config)
    await server.serve()
