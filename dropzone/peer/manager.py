"""
Peers Manager

Keeps one link (transport + transfer session) per remote peer and wires
the event bus to them.

Link selection for a roster entry:
- both sides can open direct channels -> DirectChannelLink as caller
- otherwise                            -> RelayTransport

The side that receives the roster (`peers`, i.e. the newest member) calls;
existing members become callees when the first `signal` arrives, or get a
relay link when the first relayed payload arrives. An existing member that
sends to a joiner before any signal arrived creates a callee link and waits
for the joiner's offer; two callers on one link would only ever glare.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..config import Config
from ..events import EventBus
from ..exceptions import NegotiationError
from ..transfer.chunker import FilePayload, PayloadSource
from ..transfer.session import TransferSession
from .connection import ServerConnection
from .negotiator import DirectChannelLink, Role, check_signal
from .transport import RelayTransport, Transport

logger = logging.getLogger(__name__)


class PeerEntry:
    """Link and payload session for one remote peer."""

    def __init__(self, peer_id: str, transport: Transport, session: TransferSession):
        self.peer_id = peer_id
        self.transport = transport
        self.session = session

    @property
    def is_direct(self) -> bool:
        return isinstance(self.transport, DirectChannelLink)

    async def close(self):
        await self.session.close()
        await self.transport.close()


class PeersManager:
    """Creates, routes to and tears down peer links."""

    def __init__(self, server: ServerConnection, events: EventBus, config: Config = None):
        self.config = config or Config()
        self.server = server
        self.events = events
        self.peers: Dict[str, PeerEntry] = {}
        self.roster: Dict[str, Dict[str, Any]] = {}

        events.on('peers', self._on_peers)
        events.on('peer-joined', self._on_peer_joined)
        events.on('peer-left', self._on_peer_left)
        events.on('signal', self._on_signal)
        events.on('relay', self._on_relay)
        events.on('files-selected', self._on_files_selected)
        events.on('send-text', self._on_send_text)

    @property
    def direct_channel(self) -> bool:
        return self.config.direct_channel

    # === Link creation ===

    def _add(self, peer_id: str, transport: Transport) -> PeerEntry:
        session = TransferSession(
            peer_id,
            self.events,
            chunk_size=self.config.chunk_size,
            max_partition_size=self.config.max_partition_size,
        )
        entry = PeerEntry(peer_id, transport, session)
        self.peers[peer_id] = entry
        session.attach(transport)
        return entry

    def _add_relay(self, peer_id: str) -> PeerEntry:
        relay = RelayTransport(peer_id, self.server)
        entry = self._add(peer_id, relay)
        relay.start()
        logger.info(f"Using relay for {peer_id}")
        return entry

    def _add_direct(self, peer_id: str, role: Role) -> PeerEntry:
        link = DirectChannelLink(
            peer_id,
            send_signal=self.server.send,
            role=role,
            ice_servers=self.config.ice_servers,
            retry_delay=self.config.retry_delay,
        )
        return self._add(peer_id, link)

    def _wants_direct(self, peer_info: Optional[Dict[str, Any]]) -> bool:
        return bool(self.direct_channel and peer_info and peer_info.get('directChannelCapable'))

    def connect(self, peer_info: Dict[str, Any], role: Role = Role.CALLER) -> PeerEntry:
        """
        Link to a roster entry, or refresh the existing link.

        Args:
            peer_info: Public info of the remote peer
            role: CALLER offers right away; CALLEE waits for the remote offer
        """
        peer_id = peer_info['id']
        entry = self.peers.get(peer_id)
        if entry is not None:
            if entry.is_direct:
                entry.transport.refresh()
            return entry

        if not self._wants_direct(peer_info):
            return self._add_relay(peer_id)

        entry = self._add_direct(peer_id, role)
        if role == Role.CALLER:
            entry.transport.start_soon()
        return entry

    def ensure(self, peer_id: str) -> PeerEntry:
        """
        Link for a peer, created if needed.

        Peers we did not get in a `peers` roster joined after us, so they
        call and we answer.
        """
        entry = self.peers.get(peer_id)
        if entry is not None:
            return entry
        info = self.roster.get(peer_id) or {'id': peer_id}
        return self.connect(info, role=Role.CALLEE)

    # === Event handlers ===

    def _on_peers(self, peers: List[Dict[str, Any]]):
        self.roster = {p['id']: p for p in peers or [] if p.get('id')}
        for info in self.roster.values():
            self.connect(info)

    def _on_peer_joined(self, peer: Dict[str, Any]):
        if peer and peer.get('id'):
            self.roster[peer['id']] = peer

    async def _on_peer_left(self, peer_id: str):
        self.roster.pop(peer_id, None)
        entry = self.peers.pop(peer_id, None)
        if entry is not None:
            logger.info(f"Peer {peer_id} left, closing link")
            await entry.close()

    async def _on_signal(self, message: Dict[str, Any]):
        try:
            check_signal(message)
        except NegotiationError as e:
            logger.error(f"Dropping signal: {e}")
            return

        sender = message['sender']
        if not self.direct_channel:
            logger.warning(f"Signal from {sender} ignored: direct channels disabled")
            return

        entry = self.peers.get(sender)
        if entry is None:
            entry = self._add_direct(sender, Role.CALLEE)
        elif not entry.is_direct:
            logger.warning(f"Signal from {sender} while using relay, ignored")
            return

        await entry.transport.handle_signal(message)

    async def _on_relay(self, message: Dict[str, Any]):
        sender = message.get('sender')
        entry = self.peers.get(sender)

        if entry is not None and entry.is_direct and not entry.transport.is_open:
            # The other side chose the relay; follow it
            logger.info(f"{sender} is using the relay, switching link")
            self.peers.pop(sender, None)
            await entry.close()
            entry = None

        if entry is None:
            entry = self._add_relay(sender)

        if isinstance(entry.transport, RelayTransport):
            entry.transport.receive(message)
        else:
            logger.warning(f"Relayed {message.get('type')} from {sender} on a direct link, dropped")

    def _on_files_selected(self, detail: Dict[str, Any]):
        self.send_files(detail['to'], detail.get('files', []))

    def _on_send_text(self, detail: Dict[str, Any]):
        self.send_text(detail['to'], detail.get('text', ''))

    # === Public API ===

    def send_files(self, peer_id: str, files: Iterable[Union[str, Path, PayloadSource]]):
        payloads = [
            f if isinstance(f, PayloadSource) else FilePayload(f)
            for f in files
        ]
        self.ensure(peer_id).session.send_files(payloads)

    def send_text(self, peer_id: str, text: str):
        self.ensure(peer_id).session.send_text(text)

    def get(self, peer_id: str) -> Optional[PeerEntry]:
        return self.peers.get(peer_id)

    async def clear_peers(self):
        """Close every link and forget all peers."""
        entries = list(self.peers.values())
        self.peers = {}
        self.roster = {}
        for entry in entries:
            await entry.close()
        if entries:
            logger.info(f"Closed {len(entries)} peer links")

    def get_stats(self) -> dict:
        return {
            'peers': len(self.peers),
            'direct': sum(1 for e in self.peers.values() if e.is_direct),
            'relay': sum(1 for e in self.peers.values() if not e.is_direct),
            'sessions': [e.session.get_stats() for e in self.peers.values()],
        }
