"""
Room Registry

Design Decision: Room Membership Locking
========================================

Options Considered:
1. One global lock around every room operation
   - Simple, but one slow socket stalls every room
2. Actor (task + queue) per room
   - Clean ordering, but a task per room to manage and shut down
3. One asyncio.Lock per room
   - Operations on different rooms run independently
   - Join/leave/broadcast in one room are serialized

Decision: Lock per room
- The roster snapshot sent to a joiner and the `peer-joined` fan-out happen
  under the same lock as the membership change, so no member misses or
  double-counts a joiner
- A room is deleted the moment it empties; it is marked closed first, and a
  joiner that was waiting on the dead room's lock retries on a fresh one

Wire messages produced here:
- `peers`       {peers: [public info, ...]}   to the joiner
- `peer-joined` {peer: public info}           to every existing member
- `peer-left`   {peerId}                      to remaining members
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .identity import PeerName

logger = logging.getLogger(__name__)


class SignalingTransport:
    """
    What the registry needs from a connection's socket.

    Implementations must make `send_json` a silent no-op once the socket is
    no longer open.
    """

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def send_json(self, message: Dict[str, Any]):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


@dataclass
class ConnectionRecord:
    """Server-side state of one signaling connection."""
    id: str
    room_key: str
    network_address: str
    name: PeerName
    transport: SignalingTransport
    direct_channel_capable: bool = False
    last_heartbeat: float = field(default_factory=time.monotonic)
    watchdog: Optional[asyncio.Task] = None

    def public_info(self) -> Dict[str, Any]:
        """What other room members get to see."""
        return {
            'id': self.id,
            'name': self.name.to_dict(),
            'directChannelCapable': self.direct_channel_capable,
        }

    async def send(self, message: Dict[str, Any]):
        if not self.transport.is_open:
            return
        await self.transport.send_json(message)

    def __str__(self):
        return (f"<Connection id={self.id} room={self.room_key} "
                f"directChannel={self.direct_channel_capable}>")


class Room:
    """Members of one room key."""

    def __init__(self, key: str):
        self.key = key
        self.members: Dict[str, ConnectionRecord] = {}
        self.lock = asyncio.Lock()
        self.closed = False

    def __len__(self):
        return len(self.members)

    def others(self, exclude_id: Optional[str] = None) -> List[ConnectionRecord]:
        return [m for m in self.members.values() if m.id != exclude_id]


class RoomRegistry:
    """
    Directory of rooms: room key -> Room -> ConnectionRecord.

    Lifecycle API:
    - join(record): enter the room named by record.room_key
    - leave(record, notify): leave the current room
    - change_room(record, key): silent leave, then join `key`
    - broadcast(key, message): send to every member of a room
    - relay(sender, recipient_id, message): forward within the sender's room
    """

    def __init__(self):
        self._rooms: Dict[str, Room] = {}

    def _get_or_create(self, key: str) -> Room:
        room = self._rooms.get(key)
        if room is None:
            room = Room(key)
            self._rooms[key] = room
            logger.debug(f"Room created: {key}")
        return room

    def _discard(self, room: Room):
        room.closed = True
        if self._rooms.get(room.key) is room:
            del self._rooms[room.key]
            logger.debug(f"Room deleted: {room.key}")

    # === Lifecycle ===

    async def join(self, record: ConnectionRecord) -> Room:
        """
        Add a connection to the room named by its room_key.

        Every existing member gets `peer-joined`; the joiner gets one
        `peers` snapshot of the existing members.
        """
        while True:
            room = self._get_or_create(record.room_key)
            async with room.lock:
                if room.closed:
                    continue

                existing = room.others(exclude_id=record.id)
                info = record.public_info()
                for other in existing:
                    await other.send({'type': 'peer-joined', 'peer': info})

                await record.send({
                    'type': 'peers',
                    'peers': [other.public_info() for other in existing],
                })

                room.members[record.id] = record
                logger.info(f"{record} joined room ({len(room)} members)")
                return room

    async def leave(self, record: ConnectionRecord, notify: bool = True) -> bool:
        """
        Remove a connection from its room.

        Deletes the room when it becomes empty, otherwise sends `peer-left`
        to the remaining members (unless `notify` is False).

        Returns:
            True if the connection was a member
        """
        room = self._rooms.get(record.room_key)
        if room is None:
            return False

        async with room.lock:
            if room.members.get(record.id) is not record:
                return False

            del room.members[record.id]
            logger.info(f"{record} left room ({len(room)} members)")

            if not room.members:
                self._discard(room)
                return True

            if notify:
                for other in room.others():
                    await other.send({'type': 'peer-left', 'peerId': record.id})
            return True

    async def change_room(self, record: ConnectionRecord, room_key: str) -> Room:
        """Move a connection to another room without notifying the old one."""
        await self.leave(record, notify=False)
        record.room_key = room_key
        return await self.join(record)

    async def broadcast(self, room_key: str, message: Dict[str, Any],
                        exclude_id: Optional[str] = None) -> int:
        """Send a message to every member of a room. Returns the fan-out."""
        room = self._rooms.get(room_key)
        if room is None:
            return 0

        async with room.lock:
            targets = room.others(exclude_id=exclude_id)
            for member in targets:
                await member.send(message)
            return len(targets)

    async def relay(self, sender: ConnectionRecord, recipient_id: str,
                    message: Dict[str, Any]) -> bool:
        """
        Forward a message to a member of the sender's room.

        A missing recipient is not an error: it usually means the recipient
        disconnected while the message was in flight.
        """
        recipient = self.get_member(sender.room_key, recipient_id)
        if recipient is None:
            logger.debug(f"Relay target {recipient_id} not in room {sender.room_key}, dropped")
            return False

        await recipient.send(message)
        return True

    # === Queries ===

    def get_member(self, room_key: str, connection_id: str) -> Optional[ConnectionRecord]:
        room = self._rooms.get(room_key)
        if room is None:
            return None
        return room.members.get(connection_id)

    def members(self, room_key: str) -> List[ConnectionRecord]:
        room = self._rooms.get(room_key)
        return list(room.members.values()) if room else []

    def has_room(self, room_key: str) -> bool:
        return room_key in self._rooms

    def room_sizes(self) -> Dict[str, int]:
        return {key: len(room) for key, room in self._rooms.items()}

    def all_members(self) -> List[ConnectionRecord]:
        return [m for room in self._rooms.values() for m in room.members.values()]

    def get_stats(self) -> dict:
        return {
            'rooms': len(self._rooms),
            'connections': sum(len(room) for room in self._rooms.values()),
        }
