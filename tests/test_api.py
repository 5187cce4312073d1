import pytest
from fastapi.testclient import TestClient

from dropzone import __version__
from dropzone.api import create_app
from dropzone.config import Config


@pytest.fixture
def client():
    app = create_app(Config(keepalive_interval=3600.0))
    with TestClient(app) as client:
        yield client


def receive(ws, msg_type):
    """Next message of a type, skipping keepalive pings."""
    while True:
        message = ws.receive_json()
        if message['type'] == msg_type:
            return message
        assert message['type'] in ('ping', 'peers', 'display-name'), message


def test_root(client):
    response = client.get('/')
    assert response.status_code == 200
    assert response.json() == {
        'name': 'Dropzone Signaling Server',
        'version': __version__,
        'status': 'running',
    }


def test_status_when_idle(client):
    response = client.get('/status')
    assert response.status_code == 200
    assert response.json() == {'rooms': 0, 'connections': 0, 'keepalive_interval': 3600.0}
    assert client.get('/rooms').json() == []


def test_websocket_join_relay_and_leave(client):
    with client.websocket_connect('/server/webrtc') as first:
        hello = receive(first, 'display-name')['message']
        assert hello['roomID'] == 'testclient'
        first_id = hello['peerId']

        with client.websocket_connect('/server/fallback') as second:
            snapshot = receive(second, 'peers')
            assert [p['id'] for p in snapshot['peers']] == [first_id]
            assert snapshot['peers'][0]['directChannelCapable'] is True
            second_id = receive(second, 'display-name')['message']['peerId']

            joined = receive(first, 'peer-joined')['peer']
            assert joined['id'] == second_id
            assert joined['directChannelCapable'] is False

            assert client.get('/status').json()['connections'] == 2
            assert client.get('/rooms').json() == [{'room_key': 'testclient', 'members': 2}]

            second.send_json({'type': 'text', 'to': first_id, 'text': 'aGk='})
            relayed = receive(first, 'text')
            assert relayed == {'type': 'text', 'text': 'aGk=', 'sender': second_id}

        left = receive(first, 'peer-left')
        assert left == {'type': 'peer-left', 'peerId': second_id}


def test_websocket_malformed_message_keeps_connection(client):
    with client.websocket_connect('/server/webrtc') as ws:
        receive(ws, 'display-name')
        ws.send_text('{broken')
        ws.send_json({'type': 'pong'})
        assert client.get('/status').json()['connections'] == 1
