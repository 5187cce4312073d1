"""
Peer Transports

Design Decision: One Interface, Two Variants
============================================

The payload protocol (dropzone.transfer.session) must not care how bytes
reach the other peer. Both ways of getting them there implement Transport:

1. DirectChannelLink (dropzone.peer.negotiator)
   - WebRTC data channel negotiated through the relay
2. RelayTransport (this module)
   - Every payload message goes through the signaling server with `to` set
   - Used when either side cannot open direct channels

Contract:
- send(bytes | str): binary chunk or JSON text; silently dropped when the
  transport is not open
- on_message(handler): inbound messages, delivered one at a time in
  arrival order
- on_open / on_close(handler): link became usable / stopped being usable
- close(): explicit close
"""

import asyncio
import base64
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

Message = Union[bytes, str, Dict[str, Any]]
MessageHandler = Callable[[Message], Awaitable[None]]
StateHandler = Callable[[], Any]


class Transport:
    """Base class for peer transports."""

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self._message_handler: Optional[MessageHandler] = None
        self._open_handlers: List[StateHandler] = []
        self._close_handlers: List[StateHandler] = []
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None

    # === Contract ===

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def send(self, data: Union[bytes, str]):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    # === Handlers ===

    def on_message(self, handler: MessageHandler):
        self._message_handler = handler
        self._ensure_pump()

    def on_open(self, handler: StateHandler):
        self._open_handlers.append(handler)

    def on_close(self, handler: StateHandler):
        self._close_handlers.append(handler)

    def _notify(self, handlers: List[StateHandler], what: str):
        for handler in list(handlers):
            try:
                handler()
            except Exception as e:
                logger.error(f"{what} handler error for {self.peer_id}: {e}", exc_info=True)

    def _notify_open(self):
        self._notify(self._open_handlers, 'Open')

    def _notify_closed(self):
        self._notify(self._close_handlers, 'Close')

    # === Inbound ordering ===

    def deliver(self, message: Message):
        """Queue an inbound message for the handler."""
        self._inbox.put_nowait(message)
        self._ensure_pump()

    def _ensure_pump(self):
        if self._message_handler is None:
            return
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.ensure_future(self._pump())

    async def _pump(self):
        while True:
            message = await self._inbox.get()
            try:
                await self._message_handler(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error handling message from {self.peer_id}: {e}", exc_info=True)

    def _stop_pump(self):
        if self._pump_task is not None and not self._pump_task.done():
            if self._pump_task is not asyncio.current_task():
                self._pump_task.cancel()
        self._pump_task = None


class RelayTransport(Transport):
    """
    Payload delivery through the signaling server.

    The relay speaks JSON text only, so binary chunks travel as
    {"type": "chunk", "data": <base64>} and are unwrapped on receipt.
    """

    def __init__(self, peer_id: str, server):
        """
        Args:
            peer_id: Remote connection id
            server: ServerConnection (anything with async send(dict) and is_connected)
        """
        super().__init__(peer_id)
        self._server = server
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed and self._server.is_connected

    def start(self):
        """Relay needs no negotiation: usable right away."""
        self._notify_open()

    async def send(self, data: Union[bytes, str]):
        if not self.is_open:
            return

        if isinstance(data, (bytes, bytearray, memoryview)):
            message = {
                'type': 'chunk',
                'data': base64.b64encode(bytes(data)).decode('ascii'),
            }
        elif isinstance(data, str):
            message = json.loads(data)
        else:
            message = dict(data)

        message['to'] = self.peer_id
        await self._server.send(message)

    def receive(self, message: Dict[str, Any]):
        """Hand a relayed envelope (already addressed to us) to the handler."""
        payload = {k: v for k, v in message.items() if k not in ('sender', 'to')}
        if payload.get('type') == 'chunk':
            try:
                self.deliver(base64.b64decode(payload.get('data') or ''))
            except ValueError as e:
                logger.error(f"Bad relayed chunk from {self.peer_id}: {e}")
            return
        self.deliver(payload)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        self._stop_pump()
        self._notify_closed()

    def __repr__(self):
        return f"<RelayTransport peer={self.peer_id} open={self.is_open}>"
