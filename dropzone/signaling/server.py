"""
Signaling Server

Transport-independent core of the relay. The ASGI layer (dropzone.api)
feeds it three events per websocket: connect, message, close.

Message handling:
```
disconnect  -> leave room, stop watchdog, close socket
pong        -> refresh heartbeat
updateRID   -> silent leave, join room `rid`
<has "to">  -> strip "to", stamp "sender", forward within the room
```
Payloads (`sdp`, `ice`, file protocol messages) are never inspected.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .identity import IdentityAssigner
from .keepalive import KeepaliveWatchdog, DEFAULT_INTERVAL
from .network import client_address
from .registry import ConnectionRecord, RoomRegistry, SignalingTransport

logger = logging.getLogger(__name__)


@dataclass
class ClientInfo:
    """What the server knows about a connecting client."""
    remote_address: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    direct_channel_capable: bool = False

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @property
    def user_agent(self) -> Optional[str]:
        return self.header('user-agent')

    @property
    def forwarded_for(self) -> Optional[str]:
        return self.header('x-forwarded-for')


class SignalingServer:
    """
    Accepts connections, groups them into rooms and relays messages.

    Composes IdentityAssigner, RoomRegistry and KeepaliveWatchdog.
    """

    def __init__(self, registry: RoomRegistry = None,
                 identities: IdentityAssigner = None,
                 keepalive_interval: float = DEFAULT_INTERVAL,
                 trust_proxy: bool = True,
                 watchdog: KeepaliveWatchdog = None):
        self.registry = registry or RoomRegistry()
        self.identities = identities or IdentityAssigner()
        self.trust_proxy = trust_proxy
        self.watchdog = watchdog or KeepaliveWatchdog(
            on_timeout=self.on_close,
            interval=keepalive_interval,
        )

        self._handlers = {
            'disconnect': self._on_disconnect,
            'pong': self._on_pong,
            'updateRID': self._on_update_room,
        }

    # === Connection lifecycle ===

    async def on_connect(self, transport: SignalingTransport,
                         client: ClientInfo) -> ConnectionRecord:
        """Register a new connection and put it in its room."""
        peer_id, name = self.identities.assign(client.user_agent)
        address = client_address(client.remote_address, client.forwarded_for,
                                 self.trust_proxy)

        record = ConnectionRecord(
            id=peer_id,
            room_key=address,
            network_address=address,
            name=name,
            transport=transport,
            direct_channel_capable=client.direct_channel_capable,
        )
        self.watchdog.heartbeat(record)

        await self.registry.join(record)
        self.watchdog.start(record)

        await record.send({
            'type': 'display-name',
            'message': {
                'displayName': name.display_name,
                'deviceName': name.device_name,
                'roomID': record.room_key,
                'peerId': record.id,
            },
        })

        logger.info(f"Connected: {record} ({name.display_name}, {name.device_name})")
        return record

    async def on_message(self, record: ConnectionRecord, raw: Any):
        """Handle one raw frame from a connection."""
        message = self._parse(record, raw)
        if message is None:
            return

        msg_type = message.get('type')
        handler = self._handlers.get(msg_type)
        if handler is not None:
            await handler(record, message)

        if 'to' in message:
            await self._relay(record, message)
        elif handler is None:
            logger.error(f"Unknown message type {msg_type!r} from {record}")

    async def on_close(self, record: ConnectionRecord):
        """Connection went away (socket closed or keepalive expired)."""
        self.watchdog.cancel(record)
        left = await self.registry.leave(record)
        if left:
            logger.info(f"Disconnected: {record}")
        await record.transport.close()

    async def shutdown(self):
        """Stop every watchdog and close every connection."""
        records = self.registry.all_members()
        for record in records:
            self.watchdog.cancel(record)
        for record in records:
            await self.registry.leave(record, notify=False)
            await record.transport.close()
        logger.info(f"Signaling server shut down ({len(records)} connections closed)")

    # === Message handlers ===

    def _parse(self, record: ConnectionRecord, raw: Any) -> Optional[Dict[str, Any]]:
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode('utf-8')
            except UnicodeDecodeError:
                logger.error(f"Undecodable frame from {record}, dropped")
                return None

        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.error(f"Invalid JSON from {record}: {str(raw)[:80]!r}")
            return None

        if not isinstance(message, dict):
            logger.error(f"Message from {record} is not an object, dropped")
            return None
        return message

    async def _on_disconnect(self, record: ConnectionRecord, message: Dict[str, Any]):
        await self.on_close(record)

    async def _on_pong(self, record: ConnectionRecord, message: Dict[str, Any]):
        self.watchdog.heartbeat(record)

    async def _on_update_room(self, record: ConnectionRecord, message: Dict[str, Any]):
        room_key = message.get('rid')
        if not isinstance(room_key, str) or not room_key.strip():
            logger.warning(f"updateRID without a room id from {record}, ignored")
            return

        room_key = room_key.strip()
        if room_key == record.room_key:
            return

        await self.registry.change_room(record, room_key)
        self.watchdog.start(record)

    async def _relay(self, sender: ConnectionRecord, message: Dict[str, Any]):
        recipient_id = message.pop('to')
        message['sender'] = sender.id
        await self.registry.relay(sender, recipient_id, message)

    def get_stats(self) -> dict:
        return {
            **self.registry.get_stats(),
            'keepalive_interval': self.watchdog.interval,
        }
