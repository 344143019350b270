"""
Tests for the Socket.IO relay
"""

from unittest.mock import Mock

import pytest

from app import create_app
from app.socket_relay import SocketRelay

from tests.conftest import USER_ID


def received(client, name):
    return [packet['args'][0] for packet in client.get_received() if packet['name'] == name]


@pytest.fixture
def socket_client(app):
    """Socket client connected with the dev user's token."""
    client = app.socketio.test_client(app, auth={'token': 'test-token'})
    yield client
    if client.is_connected():
        client.disconnect()


class TestConnection:
    """Tests for the handshake and room join."""

    def test_connect_with_token(self, app, socket_client):
        assert socket_client.is_connected()
        assert app.socket_relay.connection_count() == 1

    def test_connect_without_token_is_rejected(self, app):
        client = app.socketio.test_client(app)
        assert not client.is_connected()
        assert app.socket_relay.connection_count() == 0

    def test_connect_with_bad_token_is_rejected(self, app):
        client = app.socketio.test_client(app, auth={'token': 'bogus'})
        assert not client.is_connected()

    def test_authenticate_joins_user_room(self, app, socket_client):
        socket_client.emit('authenticate', {'userId': USER_ID})
        app.socket_relay.emit_generation_progress(USER_ID, 'p-1', 140, 'Almost')

        payloads = received(socket_client, 'generation:progress')
        assert len(payloads) == 1
        assert payloads[0]['presentationId'] == 'p-1'
        assert payloads[0]['progress'] == 100
        assert 'timestamp' in payloads[0]

    def test_claiming_another_user_is_ignored(self, app, socket_client):
        socket_client.emit('authenticate', {'userId': 'someone-else'})
        app.socket_relay.emit_generation_status('someone-else', 'p-1', 'thinking', 'Hi')
        app.socket_relay.emit_generation_status(USER_ID, 'p-1', 'thinking', 'Hi')

        assert received(socket_client, 'generation:status') == []

    def test_authenticate_without_user_disconnects(self, app, socket_client):
        socket_client.emit('authenticate', {})
        assert app.socket_relay.connection_count() == 0

    def test_events_only_reach_their_user(self, app):
        token = app.supabase_auth.add_user('user-2', 'two@example.com')
        first = app.socketio.test_client(app, auth={'token': 'test-token'})
        second = app.socketio.test_client(app, auth={'token': token})
        first.emit('authenticate', {'userId': USER_ID})
        second.emit('authenticate', {'userId': 'user-2'})

        app.socket_relay.emit_presentation_ready('user-2', 'p-2')

        assert received(first, 'presentation:ready') == []
        assert received(second, 'presentation:ready')[0]['presentation_id'] == 'p-2'
        first.disconnect()
        second.disconnect()

    def test_disconnect_forgets_connection(self, app, socket_client):
        socket_client.disconnect()
        assert app.socket_relay.connection_count() == 0


class TestUnauthenticatedMode:
    """Tests for relays that trust the claimed user id."""

    def test_claimed_user_is_trusted(self):
        app = create_app({
            'TESTING': True, 'DEV_MODE': True, 'MOCK_DB_FILE': None,
            'MANUS_API_KEY': None, 'SOCKET_REQUIRE_AUTH': False
        })
        client = app.socketio.test_client(app)
        assert client.is_connected()

        client.emit('authenticate', {'userId': 'anyone'})
        app.socket_relay.emit_thinking_message('anyone', 'Working on it', 'm-1')

        assert received(client, 'thinking:message')[0]['content'] == 'Working on it'
        client.disconnect()


class TestEmitHelpers:
    """Tests for the relay outside a running server."""

    def test_emit_without_server_is_dropped(self):
        relay = SocketRelay()
        relay.emit_generation_completed(USER_ID, 'p-1', 3)

    def test_init_app_is_idempotent(self, app):
        assert app.socket_relay.init_app(app) is app.socketio

    def test_payload_shapes(self):
        relay = SocketRelay()
        relay.socketio = Mock()

        relay.emit_tool_action_failed(USER_ID, {'id': 't1', 'type': 'bash', 'error': 'exit 1'}, 'tool-t1')
        relay.emit_topics_generated(USER_ID, ['A', 'B'], 'm-1')

        first, second = relay.socketio.emit.call_args_list
        assert first.args[0] == 'tool:action:failed'
        assert first.args[1]['toolAction']['error'] == 'exit 1'
        assert first.kwargs == {'to': 'user:test-user-id'}
        assert second.args[1]['topics'] == ['A', 'B']
        assert second.args[1]['messageId'] == 'm-1'
