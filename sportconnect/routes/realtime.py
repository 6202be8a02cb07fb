"""Socket.IO handlers for per-user live updates.

Clients ``subscribe`` with their session token to join the ``user_<id>`` room,
which receives ``session_update``, ``notification_update``,
``challenge_update`` and ``match_update`` events.
"""
from flask import request
from flask_socketio import emit, join_room, leave_room, rooms
from sportconnect.app import socketio
from sportconnect.auth_utils import decode_user_from_token


def user_room(user_id):
    return f'user_{user_id}'


@socketio.on('subscribe')
def on_subscribe(data):
    payload = data if isinstance(data, dict) else {}
    token = payload.get('token') or request.args.get('token') or ''
    user, error = decode_user_from_token(token)
    if error:
        emit('session_update', {'reason': 'signed_out', 'error': error})
        return

    join_room(user_room(user.id))
    emit('session_update', {'reason': 'signed_in', 'user_id': user.id})


@socketio.on('unsubscribe')
def on_unsubscribe(data=None):
    for room in rooms():
        if room.startswith('user_'):
            leave_room(room)
    emit('status', {'message': 'Unsubscribed'})
