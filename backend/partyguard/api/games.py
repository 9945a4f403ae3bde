from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from sqlalchemy.orm.exc import StaleDataError
from partyguard import db
from partyguard.models import Game, Player
from partyguard.services.security import ADMIN_RESET, UPDATE, actor_for, get_trigger, snapshot_of
from partyguard.services.security.access import guarded_write
from partyguard.socketio_events import broadcast_session_ended, broadcast_state_update
import time


games = Blueprint('games', __name__)


def _bad_request(message):
    return jsonify({'error': message}), 400


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


@games.route('/create', methods=['POST'])
@login_required
@guarded_write
def create_game():
    """Creates a new game lobby hosted by the current user, who joins as the first player."""
    data = request.get_json(silent=True) or {}
    first_phase = get_trigger().policy.phase_order[0]
    new_game = Game(host_id=current_user.id, phase=first_phase, current_round=0)
    rating = data.get('age_rating')
    if rating is not None:
        if not _is_int(rating):
            return _bad_request('age_rating must be an integer')
        new_game.age_rating = rating
    db.session.add(new_game)
    db.session.flush()
    host = Player(name=data.get('name') or current_user.username, game_id=new_game.id,
                  user_id=current_user.id, score=0, score_updated_at=time.time())
    db.session.add(host)
    db.session.commit()
    return jsonify({
        'message': 'New game created!',
        'game_code': new_game.game_code,
        'player': host.to_dict(),
    }), 201


@games.route('/join', methods=['POST'])
@login_required
@guarded_write
def join_game():
    data = request.get_json(silent=True) or {}
    game_code = data.get('game_code')
    if not game_code:
        return _bad_request('Game code is required')

    game = Game.query.filter_by(game_code=game_code.upper()).first()
    if not game:
        return jsonify({'error': 'Game not found'}), 404
    if game.phase != get_trigger().policy.phase_order[0]:
        return jsonify({'error': 'This game is not in the lobby'}), 403
    if Player.query.filter_by(user_id=current_user.id, game_id=game.id).first():
        return _bad_request('You are already in this game')

    new_player = Player(name=data.get('name') or current_user.username, game_id=game.id,
                        user_id=current_user.id, score=0, score_updated_at=time.time())
    db.session.add(new_player)
    game.updated_at = time.time()
    db.session.commit()
    broadcast_state_update(game.game_code)
    return jsonify(new_player.to_dict()), 201


@games.route('/<string:game_code>/state', methods=['GET'])
def get_game_state(game_code):
    game = Game.query.filter_by(game_code=game_code.upper()).first_or_404()
    return jsonify(game.to_dict())


@games.route('/<string:game_code>/state', methods=['PATCH'])
@login_required
@guarded_write
def update_game_state(game_code):
    """Untrusted client write to the shared game record.

    The write is committed as sent, then handed to the realtime trigger,
    which rolls back anything implausible. The response never says whether
    that happened; clients see the result on their next read.
    """
    data = request.get_json(silent=True) or {}
    game = Game.query.filter_by(game_code=game_code.upper()).first_or_404()
    before = snapshot_of(game)
    now = time.time()

    if 'phase' in data:
        if not isinstance(data['phase'], str):
            return _bad_request('phase must be a string')
        game.phase = data['phase']
    if 'age_rating' in data:
        if data['age_rating'] is not None and not _is_int(data['age_rating']):
            return _bad_request('age_rating must be an integer or null')
        game.age_rating = data['age_rating']
    if 'selected_categories' in data:
        cats = data['selected_categories']
        if not isinstance(cats, list) or not all(isinstance(c, str) for c in cats):
            return _bad_request('selected_categories must be a list of strings')
        game.categories = cats
    if 'current_round' in data:
        if not _is_int(data['current_round']):
            return _bad_request('current_round must be an integer')
        game.current_round = data['current_round']

    scores = data.get('scores') or {}
    if not isinstance(scores, dict):
        return _bad_request('scores must be an object of player id to score')
    players = {p.id: p for p in game.players}
    for raw_id, score in scores.items():
        try:
            player_id = int(raw_id)
        except (TypeError, ValueError):
            return _bad_request(f'unknown player {raw_id}')
        if player_id not in players:
            return _bad_request(f'unknown player {raw_id}')
        if not _is_int(score):
            return _bad_request('scores must be integers')
        player = players[player_id]
        if player.score != score:
            player.score = score
            player.score_updated_at = now

    game.updated_at = now
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        return jsonify({'error': 'Game changed, retry'}), 409

    action = ADMIN_RESET if data.get('admin_reset') else UPDATE
    outcome = get_trigger().on_game_write(game.id, before, actor_for(current_user), action,
                                          game_code=before.game_code, now=now)
    if outcome.accepted:
        broadcast_state_update(before.game_code)
    return jsonify({'success': True})


@games.route('/<string:game_code>', methods=['DELETE'])
@login_required
@guarded_write
def delete_game(game_code):
    game = Game.query.filter_by(game_code=game_code.upper()).first_or_404()
    if game.host_id != current_user.id and not current_user.is_admin:
        return jsonify({'error': 'Permission denied'}), 403
    code = game.game_code
    get_trigger().on_game_delete(game, deleted_by=current_user.id)
    for player in list(game.players):
        db.session.delete(player)
    db.session.delete(game)
    db.session.commit()
    current_app.logger.info(f"[delete] game={code} by={current_user.id}")
    broadcast_session_ended(code)
    return jsonify({'success': True})
