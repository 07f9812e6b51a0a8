"""
Tests for the Socket.IO notification channel.
"""

from glossed import socketio
from glossed.services.change_feed import change_feed
from glossed.services.notifications import SUBSCRIPTIONS, notification_hub

from conftest import make_token


def _events(socket_client, name):
    return [e['args'][0] for e in socket_client.get_received() if e['name'] == name]


def test_connect_requires_a_token(app, db_session):
    socket_client = socketio.test_client(app)
    assert not socket_client.is_connected()


def test_connect_opens_a_session(app, client_user):
    socket_client = socketio.test_client(app, auth={'token': make_token(client_user.id)})

    assert socket_client.is_connected()
    connected = _events(socket_client, 'connected')
    assert connected[0]['user_id'] == client_user.id
    assert connected[0]['notifications']['client_offers'] == 0
    assert change_feed.subscription_count() == len(SUBSCRIPTIONS)

    socket_client.disconnect()
    assert notification_hub.active_session_count() == 0
    assert change_feed.subscription_count() == 0


def test_two_sockets_share_one_session(app, client_user):
    token = make_token(client_user.id)
    first = socketio.test_client(app, auth={'token': token})
    second = socketio.test_client(app, auth={'token': token})

    assert notification_hub.get_session(client_user.id).refcount == 2
    assert change_feed.subscription_count() == len(SUBSCRIPTIONS)

    first.disconnect()
    assert notification_hub.get_session(client_user.id).refcount == 1
    second.disconnect()


def test_switch_session(app, client_user, pro_user):
    socket_client = socketio.test_client(app, auth={'token': make_token(client_user.id)})
    socket_client.get_received()

    socket_client.emit('switch_session', {'token': make_token(pro_user.id)})

    connected = _events(socket_client, 'connected')
    assert connected[0]['user_id'] == pro_user.id
    assert notification_hub.get_session(client_user.id) is None
    assert notification_hub.get_session(pro_user.id) is not None
    socket_client.disconnect()


def test_reset_notification_over_socket(app, client_user):
    notification_hub.counters.increment(client_user.id, 'payments')
    socket_client = socketio.test_client(app, auth={'token': make_token(client_user.id)})
    socket_client.get_received()

    socket_client.emit('reset_notification', {'category': 'payments'})
    socket_client.emit('reset_notification', {'category': 'messages'})

    received = socket_client.get_received()
    counters = [e['args'][0] for e in received if e['name'] == 'notifications']
    errors = [e['args'][0] for e in received if e['name'] == 'error']
    assert counters[0]['notifications']['payments'] == 0
    assert errors
    socket_client.disconnect()
