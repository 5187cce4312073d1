import json
import logging

import pytest
import pytest_asyncio

from dropzone.signaling import ClientInfo, KeepaliveWatchdog, SignalingServer

from .conftest import FakeSocket, settle

CHROME_MAC = (
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'
)


@pytest_asyncio.fixture
async def server():
    server = SignalingServer(keepalive_interval=3600.0)
    yield server
    await server.shutdown()


async def connect(server, address='192.168.1.10', capable=True, headers=None):
    socket = FakeSocket()
    info = ClientInfo(
        remote_address=address,
        headers=headers or {'user-agent': CHROME_MAC},
        direct_channel_capable=capable,
    )
    record = await server.on_connect(socket, info)
    await settle()
    return record, socket


@pytest.mark.asyncio
async def test_connect_announces_identity(server):
    record, socket = await connect(server)

    assert socket.of_type('peers') == [{'type': 'peers', 'peers': []}]
    hello = socket.of_type('display-name')[0]['message']
    assert hello == {
        'displayName': record.name.display_name,
        'deviceName': 'Mac Chrome',
        'roomID': '127.0.0.1',
        'peerId': record.id,
    }


@pytest.mark.asyncio
async def test_same_network_shares_a_room(server):
    a, a_socket = await connect(server, '192.168.1.10')
    b, _ = await connect(server, '10.0.0.7', capable=False)
    c, c_socket = await connect(server, '203.0.113.9')

    joined = a_socket.of_type('peer-joined')
    assert [m['peer']['id'] for m in joined] == [b.id]
    assert joined[0]['peer']['directChannelCapable'] is False
    assert c_socket.of_type('peers') == [{'type': 'peers', 'peers': []}]
    assert c.room_key == '203.0.113.9'


@pytest.mark.asyncio
async def test_forwarded_for_picks_room(server):
    record, _ = await connect(server, '10.0.0.1', headers={
        'user-agent': CHROME_MAC,
        'x-forwarded-for': '198.51.100.4, 10.0.0.1',
    })
    assert record.room_key == '198.51.100.4'


@pytest.mark.asyncio
async def test_relay_stamps_sender_and_strips_to(server):
    a, a_socket = await connect(server)
    b, _ = await connect(server)

    await server.on_message(b, json.dumps({
        'type': 'signal',
        'to': a.id,
        'sdp': {'type': 'offer', 'sdp': 'v=0'},
    }))

    assert a_socket.of_type('signal') == [{
        'type': 'signal',
        'sender': b.id,
        'sdp': {'type': 'offer', 'sdp': 'v=0'},
    }]


@pytest.mark.asyncio
async def test_relay_is_payload_agnostic(server):
    a, a_socket = await connect(server)
    b, _ = await connect(server)

    await server.on_message(b, json.dumps({'type': 'whatever', 'to': a.id, 'x': [1, 2]}))
    assert a_socket.of_type('whatever') == [{'type': 'whatever', 'x': [1, 2], 'sender': b.id}]


@pytest.mark.asyncio
async def test_relay_to_other_room_is_dropped(server):
    a, a_socket = await connect(server, '192.168.1.10')
    b, _ = await connect(server, '203.0.113.9')

    await server.on_message(b, json.dumps({'type': 'signal', 'to': a.id, 'ice': {}}))
    assert a_socket.of_type('signal') == []


@pytest.mark.asyncio
async def test_malformed_messages_are_dropped(server, caplog):
    a, a_socket = await connect(server)
    b, b_socket = await connect(server)
    a_socket.clear()

    with caplog.at_level(logging.ERROR):
        await server.on_message(b, '{not json')
        await server.on_message(b, '[1, 2, 3]')
        await server.on_message(b, b'\xff\xfe')
        await server.on_message(b, json.dumps({'type': 'mystery'}))

    assert a_socket.sent == []
    assert b_socket.close_calls == 0
    assert server.registry.get_member(b.room_key, b.id) is b
    assert 'mystery' in caplog.text


@pytest.mark.asyncio
async def test_bytes_frames_are_parsed(server):
    a, a_socket = await connect(server)
    b, _ = await connect(server)

    await server.on_message(b, json.dumps({'type': 'text', 'to': a.id}).encode())
    assert len(a_socket.of_type('text')) == 1


@pytest.mark.asyncio
async def test_disconnect_notifies_room(server):
    a, a_socket = await connect(server)
    b, b_socket = await connect(server)

    await server.on_message(b, json.dumps({'type': 'disconnect'}))

    assert a_socket.of_type('peer-left') == [{'type': 'peer-left', 'peerId': b.id}]
    assert b_socket.close_calls == 1
    assert b.watchdog is None

    # the socket closing afterwards changes nothing
    await server.on_close(b)
    assert len(a_socket.of_type('peer-left')) == 1


@pytest.mark.asyncio
async def test_update_room_moves_without_peer_left(server):
    a, a_socket = await connect(server)
    b, b_socket = await connect(server)
    c, c_socket = await connect(server, '203.0.113.9')
    a_socket.clear()
    c_socket.clear()

    await server.on_message(b, json.dumps({'type': 'updateRID', 'rid': '203.0.113.9'}))

    assert a_socket.of_type('peer-left') == []
    assert [m['peer']['id'] for m in c_socket.of_type('peer-joined')] == [b.id]
    assert [p['id'] for p in b_socket.of_type('peers')[-1]['peers']] == [c.id]
    assert b.room_key == '203.0.113.9'


@pytest.mark.asyncio
async def test_update_room_ignores_blank_and_same_room(server):
    a, _ = await connect(server)
    b, b_socket = await connect(server)
    b_socket.clear()

    await server.on_message(b, json.dumps({'type': 'updateRID', 'rid': '  '}))
    await server.on_message(b, json.dumps({'type': 'updateRID', 'rid': b.room_key}))

    assert b_socket.of_type('peers') == []
    assert b.room_key == '127.0.0.1'


@pytest.mark.asyncio
async def test_pong_refreshes_heartbeat(server):
    record, _ = await connect(server)
    record.last_heartbeat = 0.0

    await server.on_message(record, json.dumps({'type': 'pong'}))
    assert record.last_heartbeat > 0.0


@pytest.mark.asyncio
async def test_keepalive_eviction_acts_as_close():
    now = [0.0]
    server = SignalingServer()
    server.watchdog = KeepaliveWatchdog(server.on_close, interval=30.0, clock=lambda: now[0])

    a, a_socket = await connect(server)
    b, b_socket = await connect(server)

    now[0] = 61.0
    assert await server.watchdog.check(b) is False

    assert a_socket.of_type('peer-left') == [{'type': 'peer-left', 'peerId': b.id}]
    assert b_socket.close_calls == 1
    assert server.get_stats()['connections'] == 1
    await server.shutdown()


@pytest.mark.asyncio
async def test_stats(server):
    await connect(server, '192.168.1.10')
    await connect(server, '203.0.113.9')
    assert server.get_stats() == {'rooms': 2, 'connections': 2, 'keepalive_interval': 3600.0}
