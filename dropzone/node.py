"""
Dropzone Node - Client Controller

The main entry point on the client side. Orchestrates:
- ServerConnection for the signaling relay
- PeersManager for per-peer links and transfers
- EventBus as the boundary to the CLI (or any other UI)
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .config import Config
from .events import EventBus
from .peer.connection import ServerConnection
from .peer.manager import PeersManager
from .transfer.chunker import PayloadSource

logger = logging.getLogger(__name__)


class DropzoneNode:
    """
    A dropzone client.

    Combines the relay connection and peer links into one interface:
    - start() / stop(): join and leave the relay
    - get_peers() / find_peer(query): the current room roster
    - send_files(peer_id, files) / send_text(peer_id, text)
    - change_room(room_id): move to a user-chosen room
    """

    def __init__(self, config: Config = None, events: EventBus = None):
        """
        Initialize a dropzone node.

        Args:
            config: Node configuration (uses defaults if not provided)
            events: Event bus to publish on (a new one if not provided)
        """
        self.config = config or Config()
        self.events = events or EventBus()

        self.server = ServerConnection(
            self.config.server_url,
            self.events,
            direct_channel=self.config.direct_channel,
            reconnect_delay=self.config.reconnect_delay,
        )
        self.peers = PeersManager(self.server, self.events, self.config)

        # State
        self._running = False
        self.identity: Dict[str, Any] = {}
        self.roster: Dict[str, Dict[str, Any]] = {}

        self.events.on('display-name', self._on_display_name)
        self.events.on('peers', self._on_peers)
        self.events.on('peer-joined', self._on_peer_joined)
        self.events.on('peer-left', self._on_peer_left)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def peer_id(self) -> Optional[str]:
        return self.identity.get('peerId')

    @property
    def display_name(self) -> Optional[str]:
        return self.identity.get('displayName')

    @property
    def room_id(self) -> Optional[str]:
        return self.identity.get('roomID')

    async def start(self, timeout: float = None):
        """Connect to the signaling server and wait for our identity."""
        if self._running:
            return

        logger.info(f"Connecting to {self.server.endpoint}...")
        identity = asyncio.ensure_future(self.events.wait_for('display-name', timeout=timeout))
        await self.server.start()
        try:
            await identity
        except asyncio.TimeoutError:
            await self.server.stop()
            raise

        self._running = True
        logger.info(f"Joined room {self.room_id} as {self.display_name}")

    async def stop(self):
        """Close every peer link and leave the relay."""
        if not self._running and not self.server.is_connected:
            return

        logger.info("Stopping dropzone node...")
        await self.peers.clear_peers()
        await self.server.stop()
        self.roster.clear()
        self._running = False
        logger.info("Dropzone node stopped")

    # === Roster ===

    def _on_display_name(self, message: Dict[str, Any]):
        self.identity = dict(message or {})

    def _on_peers(self, peers: List[Dict[str, Any]]):
        self.roster = {p['id']: p for p in peers or [] if p.get('id')}

    def _on_peer_joined(self, peer: Dict[str, Any]):
        if peer and peer.get('id'):
            self.roster[peer['id']] = peer

    def _on_peer_left(self, peer_id: str):
        self.roster.pop(peer_id, None)

    def get_peers(self) -> List[Dict[str, Any]]:
        return list(self.roster.values())

    def find_peer(self, query: str) -> Optional[Dict[str, Any]]:
        """Roster entry by id, id prefix or display name (case-insensitive)."""
        if query in self.roster:
            return self.roster[query]

        query_lower = query.lower()
        for peer in self.roster.values():
            name = (peer.get('name') or {}).get('displayName', '')
            if name.lower() == query_lower:
                return peer

        matches = [p for pid, p in self.roster.items() if pid.startswith(query)]
        if len(matches) == 1:
            return matches[0]
        return None

    async def wait_for_peer(self, query: str = None, timeout: float = None) -> Dict[str, Any]:
        """Wait until a peer matching `query` (or any peer) is in the room."""
        found = asyncio.get_running_loop().create_future()

        def check(_detail=None):
            peer = self.find_peer(query) if query else next(iter(self.roster.values()), None)
            if peer is not None and not found.done():
                found.set_result(peer)

        check()
        # Registered after our own roster handlers, so the roster is current
        self.events.on('peers', check)
        self.events.on('peer-joined', check)
        try:
            return await asyncio.wait_for(found, timeout)
        finally:
            self.events.off('peers', check)
            self.events.off('peer-joined', check)

    # === Sending ===

    def send_files(self, peer_id: str, files: Iterable[Union[str, Path, PayloadSource]]):
        """Queue files for a peer (fires files-selected)."""
        self.events.fire('files-selected', {'files': list(files), 'to': peer_id})

    def send_text(self, peer_id: str, text: str):
        self.events.fire('send-text', {'to': peer_id, 'text': text})

    async def change_room(self, room_id: str):
        """Move to a user-chosen room; links to the old room are closed."""
        logger.info(f"Changing room to {room_id}")
        await self.peers.clear_peers()
        self.roster.clear()
        await self.server.send({'type': 'updateRID', 'rid': room_id})
        self.identity['roomID'] = room_id

    def get_stats(self) -> dict:
        """Get node statistics."""
        return {
            'running': self._running,
            'peer_id': self.peer_id,
            'display_name': self.display_name,
            'room': self.room_id,
            'endpoint': self.server.endpoint,
            'connected': self.server.is_connected,
            'roster': len(self.roster),
            'links': self.peers.get_stats(),
        }
