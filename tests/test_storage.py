import pytest

from dropzone.storage import safe_name, save_received
from dropzone.transfer.digester import ReceivedFile


@pytest.mark.parametrize('name,expected', [
    ('photo.jpg', 'photo.jpg'),
    ('../../etc/passwd', 'passwd'),
    ('C:\\Users\\me\\notes.txt', 'notes.txt'),
    ('', 'received.bin'),
    ('..', 'received.bin'),
    ('.hidden', 'hidden'),
])
def test_safe_name(name, expected):
    assert safe_name(name) == expected


@pytest.mark.asyncio
async def test_save_never_overwrites(tmp_path):
    out = tmp_path / 'received'
    first = await save_received(out, ReceivedFile('a.txt', 'text/plain', 3, b'one', 'p'))
    second = await save_received(out, {'name': 'a.txt', 'data': b'two'})
    third = await save_received(out, {'name': 'a.txt', 'data': b'three'})

    assert first == out / 'a.txt'
    assert second == out / 'a (1).txt'
    assert third == out / 'a (2).txt'
    assert first.read_bytes() == b'one'
    assert second.read_bytes() == b'two'


@pytest.mark.asyncio
async def test_save_strips_directories(tmp_path):
    path = await save_received(tmp_path, {'name': '../escape.bin', 'data': b'x'})
    assert path == tmp_path / 'escape.bin'
