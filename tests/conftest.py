import asyncio
from typing import Any, Dict, List

import pytest

from dropzone.events import EventBus
from dropzone.peer.transport import Transport
from dropzone.signaling.identity import IdentityAssigner
from dropzone.signaling.registry import ConnectionRecord, SignalingTransport


class FakeSocket(SignalingTransport):
    """Records every message the server sends to one connection."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.open = True
        self.close_calls = 0

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, message):
        if self.open:
            self.sent.append(message)

    async def close(self):
        self.close_calls += 1
        self.open = False

    def types(self) -> List[str]:
        return [m['type'] for m in self.sent]

    def of_type(self, msg_type: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m['type'] == msg_type]

    def clear(self):
        self.sent.clear()


def make_record(peer_id: str, room_key: str = 'room-a', capable: bool = True) -> ConnectionRecord:
    name = IdentityAssigner().name_for(peer_id)
    return ConnectionRecord(
        id=peer_id,
        room_key=room_key,
        network_address=room_key,
        name=name,
        transport=FakeSocket(),
        direct_channel_capable=capable,
    )


class LoopbackTransport(Transport):
    """In-memory transport; `connect(a, b)` links two of them."""

    def __init__(self, peer_id: str):
        super().__init__(peer_id)
        self.remote: 'LoopbackTransport' = None
        self.open = False
        self.sent: List[Any] = []

    @property
    def is_open(self) -> bool:
        return self.open

    async def send(self, data):
        if not self.open:
            return
        self.sent.append(data)
        self.remote.deliver(data)

    def set_open(self):
        self.open = True
        self._notify_open()

    async def close(self):
        if not self.open:
            return
        self.open = False
        self._stop_pump()
        self._notify_closed()

    @staticmethod
    def connect(a: 'LoopbackTransport', b: 'LoopbackTransport'):
        a.remote, b.remote = b, a


class FakeServerConnection:
    """Stands in for ServerConnection: collects what the client sends."""

    def __init__(self, connected: bool = True):
        self.is_connected = connected
        self.sent: List[Dict[str, Any]] = []

    async def send(self, message):
        if self.is_connected:
            self.sent.append(message)


class EventRecorder:
    """Collects the details of selected events fired on a bus."""

    def __init__(self, events: EventBus, *types: str):
        self.seen: Dict[str, List[Any]] = {t: [] for t in types}
        for t in types:
            events.on(t, self.seen[t].append)

    def __getitem__(self, event_type: str) -> List[Any]:
        return self.seen[event_type]


async def settle(rounds: int = 20):
    """Let scheduled tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(condition, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def events():
    return EventBus()
