from flask_socketio import join_room, leave_room, emit
from flask_login import current_user
from flask import current_app
from partyguard import socketio
from partyguard.services.security.policy import BANNED


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_join_game(data):
    game_code = (data or {}).get('game_code')
    if not game_code:
        emit('error', {'message': 'game_code is required'})
        return
    if current_user.is_authenticated:
        trigger = current_app.extensions['security']
        if trigger.escalator.effective_status(current_user.id) == BANNED:
            emit('error', {'message': 'Permission denied'})
            return
    room = f"game:{game_code.upper()}"
    join_room(room)
    emit('joined', {'room': room})


def handle_leave_game(data):
    game_code = (data or {}).get('game_code')
    if not game_code:
        emit('error', {'message': 'game_code is required'})
        return
    room = f"game:{game_code.upper()}"
    leave_room(room)
    emit('left', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def broadcast_state_update(game_code: str) -> None:
    """Tell clients in the room to re-read the game; carries no change details."""
    # socketio.emit since this may run outside a socket handler
    socketio.emit('state_update', {'game_code': game_code}, to=f"game:{game_code}", namespace='/ws')


def broadcast_session_ended(game_code: str) -> None:
    socketio.emit('session_ended', {'game_code': game_code}, to=f"game:{game_code}", namespace='/ws')


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('join_game', handle_join_game, namespace='/ws')
    socketio.on_event('leave_game', handle_leave_game, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('join_game', handle_join_game, namespace='/')
        socketio.on_event('leave_game', handle_leave_game, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
