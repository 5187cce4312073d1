"""
Server Connection

Client end of the signaling websocket. Turns server messages into events
and reconnects when the connection drops.

Events fired:
- display-name                 our identity and room
- peers / peer-joined / peer-left
- peer-online / peer-offline   -> also notify-user
- signal                       negotiation message for PeersManager
- relay                        payload message relayed from a peer
- server-connected / server-disconnected
"""

import asyncio
import json
import logging
import platform
from typing import Any, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from .. import __version__
from ..events import EventBus

logger = logging.getLogger(__name__)

# Payload protocol messages that arrive through the relay
RELAYED_TYPES = {
    'header', 'chunk', 'partition', 'partition-received',
    'progress', 'transfer-complete', 'text',
}

_PLATFORM_TOKENS = {
    'Linux': 'X11; Linux x86_64',
    'Darwin': 'Macintosh; Intel Mac OS X 10_15_7',
    'Windows': 'Windows NT 10.0; Win64; x64',
}


def user_agent() -> str:
    """User-Agent that lets the server name this device by its OS."""
    token = _PLATFORM_TOKENS.get(platform.system(), platform.system() or 'Unknown')
    return f"Mozilla/5.0 ({token}) dropzone/{__version__}"


class ServerConnection:
    """Websocket connection to the signaling server."""

    def __init__(self, server_url: str, events: EventBus,
                 direct_channel: bool = True, reconnect_delay: float = 5.0):
        """
        Args:
            server_url: Base URL, e.g. ws://192.168.1.10:8000
            events: Bus to fire server events on
            direct_channel: Whether this client can open direct channels
            reconnect_delay: Seconds to wait before reconnecting
        """
        self.server_url = server_url.rstrip('/')
        self.events = events
        self.direct_channel = direct_channel
        self.reconnect_delay = reconnect_delay

        self._ws = None
        self._connected = False
        self._stopped = False
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()

    @property
    def endpoint(self) -> str:
        variant = 'webrtc' if self.direct_channel else 'fallback'
        return f"{self.server_url}/server/{variant}"

    @property
    def is_connected(self) -> bool:
        return self._connected and self._ws is not None

    async def start(self):
        """Start connecting (and reconnecting) in the background."""
        if self._task is not None and not self._task.done():
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float = None):
        await asyncio.wait_for(self._ready.wait(), timeout)

    async def stop(self):
        """Say goodbye to the server and stop reconnecting."""
        self._stopped = True
        if self.is_connected:
            await self.send({'type': 'disconnect'})
        ws, self._ws = self._ws, None
        self._connected = False
        if ws is not None:
            await ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def send(self, message: Dict[str, Any]):
        """Send a JSON message; dropped silently when not connected."""
        if not self.is_connected:
            return
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed:
            logger.debug(f"Dropped {message.get('type')} on closed connection")

    async def _run(self):
        while not self._stopped:
            try:
                async with websockets.connect(self.endpoint, user_agent_header=user_agent()) as ws:
                    self._ws = ws
                    self._connected = True
                    self._ready.set()
                    logger.info(f"Connected to signaling server {self.endpoint}")
                    self.events.fire('server-connected', {'endpoint': self.endpoint})

                    async for raw in ws:
                        await self.handle_message(raw)
            except (OSError, ConnectionClosed, InvalidHandshake, InvalidURI) as e:
                logger.warning(f"Signaling connection error: {e}")
            finally:
                was_connected = self._connected
                self._ws = None
                self._connected = False
                self._ready.clear()

            if self._stopped:
                break

            if was_connected:
                self.events.fire('server-disconnected', None)
            logger.info(f"Server disconnected, retrying in {self.reconnect_delay:.0f}s")
            self.events.fire('notify-user', {
                'message': f'Connection lost. Retrying in {self.reconnect_delay:.0f} seconds...'
            })
            await asyncio.sleep(self.reconnect_delay)

    async def handle_message(self, raw: Any):
        """Dispatch one message from the server."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.error(f"Invalid JSON from server: {str(raw)[:80]!r}")
            return
        if not isinstance(message, dict):
            logger.error(f"Unexpected message from server: {message!r}")
            return

        msg_type = message.get('type')
        logger.debug(f"WS: {msg_type}")

        if msg_type == 'peers':
            self.events.fire('peers', message.get('peers', []))
        elif msg_type == 'peer-joined':
            self.events.fire('peer-joined', message.get('peer'))
        elif msg_type == 'peer-left':
            self.events.fire('peer-left', message.get('peerId'))
        elif msg_type in ('peer-online', 'peer-offline'):
            detail = message.get('message') or {}
            self.events.fire(msg_type, detail)
            state = 'online' if msg_type == 'peer-online' else 'offline'
            self.events.fire('notify-user', {
                'message': f"{detail.get('displayName', 'A peer')} is {state}"
            })
        elif msg_type == 'signal':
            self.events.fire('signal', message)
        elif msg_type == 'ping':
            await self.send({'type': 'pong'})
        elif msg_type == 'display-name':
            self.events.fire('display-name', message.get('message') or {})
        elif msg_type in RELAYED_TYPES and message.get('sender'):
            self.events.fire('relay', message)
        else:
            logger.error(f"WS: unknown message type {msg_type!r}")
