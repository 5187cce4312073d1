"""
Signaling Module - Rooms, Identities and Relay

Server side of dropzone: assigns identities to websocket connections,
groups them into rooms and relays negotiation messages between members.
"""

from .identity import IdentityAssigner, PeerName, generate_peer_id, display_name, device_name
from .network import client_address, normalize_address
from .registry import ConnectionRecord, Room, RoomRegistry, SignalingTransport
from .keepalive import KeepaliveWatchdog
from .server import ClientInfo, SignalingServer

__all__ = [
    'IdentityAssigner',
    'PeerName',
    'generate_peer_id',
    'display_name',
    'device_name',
    'client_address',
    'normalize_address',
    'ConnectionRecord',
    'Room',
    'RoomRegistry',
    'SignalingTransport',
    'KeepaliveWatchdog',
    'ClientInfo',
    'SignalingServer',
]
