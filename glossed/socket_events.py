"""WebSocket events for real-time booking notifications."""

from flask_socketio import emit, join_room, leave_room
from flask import request
from glossed.errors import BookingError, SubscriptionLeak
from glossed.services.notifications import notification_hub, user_room
from glossed.utils import decode_user_id
import logging

logger = logging.getLogger(__name__)


def _token_from(auth):
    if auth and isinstance(auth, dict) and auth.get('token'):
        return auth.get('token')
    return request.args.get('token')


def register_socket_events(socketio):
    """Register all Socket.IO event handlers."""

    @socketio.on('connect')
    def handle_connect(auth):
        """Authenticate the socket and open the user's notification session."""
        user_id = decode_user_id(_token_from(auth))
        if not user_id:
            logger.warning('Socket connection with missing or invalid token')
            return False

        try:
            notification_hub.bind(request.sid, user_id)
        except SubscriptionLeak as e:
            logger.critical(f'Socket {request.sid}: {e.message}')
            return False

        join_room(user_room(user_id))
        logger.info(f'User {user_id} connected: {request.sid}')
        emit('connected', {
            'user_id': user_id,
            'notifications': notification_hub.notifications(user_id),
        })
        return True

    @socketio.on('disconnect')
    def handle_disconnect():
        """Release the notification session held by this socket."""
        user_id = notification_hub.unbind(request.sid)
        if user_id:
            logger.info(f'User {user_id} disconnected: {request.sid}')

    @socketio.on('switch_session')
    def handle_switch_session(data):
        """Rebind the socket to another identity (logout/login without reconnect)."""
        token = (data or {}).get('token')
        user_id = decode_user_id(token)
        if not user_id:
            emit('error', {'message': 'Invalid token'})
            return

        previous = notification_hub.bound_user(request.sid)
        try:
            notification_hub.bind(request.sid, user_id)
        except SubscriptionLeak as e:
            logger.critical(f'Socket {request.sid}: {e.message}')
            emit('error', {'message': 'Could not switch session'})
            return

        if previous is not None and previous != user_id:
            leave_room(user_room(previous))
        join_room(user_room(user_id))

        logger.info(f'Socket {request.sid} switched from user {previous} to {user_id}')
        emit('connected', {
            'user_id': user_id,
            'notifications': notification_hub.notifications(user_id),
        })

    @socketio.on('reset_notification')
    def handle_reset_notification(data):
        """Zero one notification category of the bound user."""
        user_id = notification_hub.bound_user(request.sid)
        if user_id is None:
            emit('error', {'message': 'Not authenticated'})
            return

        try:
            counters = notification_hub.reset_notification(user_id, (data or {}).get('category'))
        except BookingError as e:
            emit('error', {'message': e.message})
            return

        emit('notifications', {'notifications': counters})
