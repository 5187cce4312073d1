import asyncio
import os

import pytest
import pytest_asyncio

from dropzone.events import EventBus
from dropzone.peer.negotiator import DirectChannelLink, LinkState, Role
from dropzone.transfer.chunker import BytesPayload
from dropzone.transfer.session import TransferSession

from .conftest import EventRecorder, wait_until


class SignalWire:
    """Carries one link's signals to the other link, in order."""

    def __init__(self, sender_id: str):
        self.sender_id = sender_id
        self.queue = asyncio.Queue()
        self.sent = []
        self.target = None
        self.task = None

    async def send(self, message):
        self.sent.append(message)
        await self.queue.put(dict(message, sender=self.sender_id))

    def connect(self, target: DirectChannelLink):
        self.target = target
        self.task = asyncio.ensure_future(self._pump())

    async def _pump(self):
        while True:
            message = await self.queue.get()
            await self.target.handle_signal(message)


@pytest_asyncio.fixture
async def links():
    to_callee, to_caller = SignalWire('alice'), SignalWire('bob')
    caller = DirectChannelLink('bob', to_callee.send, Role.CALLER, ice_servers=[])
    callee = DirectChannelLink('alice', to_caller.send, Role.CALLEE, ice_servers=[])
    to_callee.connect(callee)
    to_caller.connect(caller)

    yield caller, callee, to_callee, to_caller

    await caller.close()
    await callee.close()
    for wire in (to_callee, to_caller):
        wire.task.cancel()


@pytest.mark.asyncio
async def test_caller_and_callee_open_a_channel(links):
    caller, callee, to_callee, to_caller = links

    await caller.start()
    await wait_until(lambda: caller.is_open and callee.is_open, timeout=20.0)

    assert caller.state == LinkState.CONNECTED
    assert callee.state == LinkState.CONNECTED
    assert to_callee.sent[0]['sdp']['type'] == 'offer'
    assert to_caller.sent[0]['sdp']['type'] == 'answer'
    assert all(m['sdp']['type'] != 'offer' for m in to_caller.sent if m.get('sdp'))


@pytest.mark.asyncio
async def test_multi_partition_payload_over_direct_channel(links):
    caller, callee, _, _ = links
    alice_events, bob_events = EventBus(), EventBus()
    inbox = EventRecorder(bob_events, 'file-received')

    alice = TransferSession('bob', alice_events)
    bob = TransferSession('alice', bob_events)
    alice.attach(caller)
    bob.attach(callee)

    data = os.urandom(2_500_000)
    alice.send_files([BytesPayload(data, name='video.bin')])
    await caller.start()

    await wait_until(lambda: inbox['file-received'], timeout=30.0)
    await wait_until(lambda: alice.files_sent == 1, timeout=10.0)

    received = inbox['file-received'][0]
    assert received['data'] == data
    assert received['sender'] == 'alice'
    assert not alice.is_busy
