"""
Peer Module - Links Between Clients

Provides the two ways a client reaches another client:
- DirectChannelLink - negotiated WebRTC data channel
- RelayTransport - delivery through the signaling server

PeersManager lives in dropzone.peer.manager; import it from there.
"""

from .transport import Transport, RelayTransport
from .negotiator import DirectChannelLink, LinkEvent, LinkState, LinkStateMachine, Role
from .connection import ServerConnection

__all__ = [
    'Transport',
    'RelayTransport',
    'DirectChannelLink',
    'LinkEvent',
    'LinkState',
    'LinkStateMachine',
    'Role',
    'ServerConnection',
]
