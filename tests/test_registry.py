import asyncio

import pytest

from dropzone.signaling.registry import RoomRegistry

from .conftest import make_record


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.mark.asyncio
async def test_joiner_gets_snapshot_and_members_get_one_notification(registry):
    a, b, c = make_record('a'), make_record('b'), make_record('c')
    await registry.join(a)
    await registry.join(b)
    await registry.join(c)

    assert a.transport.of_type('peers') == [{'type': 'peers', 'peers': []}]
    assert [m['peer']['id'] for m in a.transport.of_type('peer-joined')] == ['b', 'c']
    assert [m['peer']['id'] for m in b.transport.of_type('peer-joined')] == ['c']
    assert c.transport.of_type('peer-joined') == []

    snapshot = c.transport.of_type('peers')
    assert len(snapshot) == 1
    assert {p['id'] for p in snapshot[0]['peers']} == {'a', 'b'}


@pytest.mark.asyncio
async def test_public_info_shape(registry):
    a, b = make_record('a', capable=False), make_record('b')
    await registry.join(a)
    await registry.join(b)

    peer = b.transport.of_type('peers')[0]['peers'][0]
    assert set(peer) == {'id', 'name', 'directChannelCapable'}
    assert peer['directChannelCapable'] is False
    assert peer['name']['displayName'] == a.name.display_name


@pytest.mark.asyncio
async def test_rooms_are_isolated(registry):
    a, b = make_record('a', 'room-a'), make_record('b', 'room-b')
    await registry.join(a)
    await registry.join(b)

    assert a.transport.of_type('peer-joined') == []
    assert b.transport.of_type('peers') == [{'type': 'peers', 'peers': []}]

    assert await registry.broadcast('room-a', {'type': 'hello'}) == 1
    assert b.transport.of_type('hello') == []

    assert await registry.relay(a, 'b', {'type': 'signal'}) is False
    assert b.transport.of_type('signal') == []


@pytest.mark.asyncio
async def test_empty_room_is_deleted(registry):
    a, b = make_record('a'), make_record('b')
    await registry.join(a)
    await registry.join(b)

    assert await registry.leave(a) is True
    assert b.transport.of_type('peer-left') == [{'type': 'peer-left', 'peerId': 'a'}]
    assert registry.has_room('room-a')

    assert await registry.leave(b) is True
    assert not registry.has_room('room-a')
    assert registry.get_stats() == {'rooms': 0, 'connections': 0}


@pytest.mark.asyncio
async def test_leave_twice_is_harmless(registry):
    a, b = make_record('a'), make_record('b')
    await registry.join(a)
    await registry.join(b)

    await registry.leave(a)
    assert await registry.leave(a) is False
    assert len(b.transport.of_type('peer-left')) == 1


@pytest.mark.asyncio
async def test_change_room_is_silent_for_old_room(registry):
    a, b, c = make_record('a', 'lan'), make_record('b', 'lan'), make_record('c', 'custom')
    for record in (a, b, c):
        await registry.join(record)
    b.transport.clear()
    c.transport.clear()

    await registry.change_room(a, 'custom')

    assert a.room_key == 'custom'
    assert b.transport.sent == []
    assert c.transport.of_type('peer-joined')[0]['peer']['id'] == 'a'
    assert {p['id'] for p in a.transport.of_type('peers')[-1]['peers']} == {'c'}
    assert registry.get_member('lan', 'a') is None
    assert registry.get_member('custom', 'a') is a


@pytest.mark.asyncio
async def test_change_room_deletes_emptied_room(registry):
    a = make_record('a', 'lan')
    await registry.join(a)
    await registry.change_room(a, 'custom')

    assert not registry.has_room('lan')
    assert registry.room_sizes() == {'custom': 1}


@pytest.mark.asyncio
async def test_concurrent_joins_see_each_other_once(registry):
    records = [make_record(f'p{i}') for i in range(8)]
    await asyncio.gather(*(registry.join(r) for r in records))

    for record in records:
        seen = {m['peer']['id'] for m in record.transport.of_type('peer-joined')}
        seen |= {p['id'] for p in record.transport.of_type('peers')[0]['peers']}
        assert seen == {r.id for r in records} - {record.id}


@pytest.mark.asyncio
async def test_relay_to_missing_recipient_is_dropped(registry):
    a = make_record('a')
    await registry.join(a)
    assert await registry.relay(a, 'ghost', {'type': 'signal'}) is False


@pytest.mark.asyncio
async def test_closed_socket_is_skipped(registry):
    a, b = make_record('a'), make_record('b')
    await registry.join(a)
    a.transport.open = False
    await registry.join(b)
    assert a.transport.of_type('peer-joined') == []
