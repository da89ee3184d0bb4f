from flask import Blueprint, request, jsonify, current_app
from sqlalchemy.exc import OperationalError
from ultimatum import db
from ultimatum.models import generate_player_id
from ultimatum.services.games.errors import GameError, StoreUnavailable
from ultimatum.services.games.matchmaking import touch_session

main = Blueprint('main', __name__)


@main.app_errorhandler(GameError)
def handle_game_error(exc):
    return jsonify({'error': exc.message}), exc.status_code


@main.app_errorhandler(OperationalError)
def handle_store_error(exc):
    db.session.rollback()
    current_app.logger.warning(f"[store-error] {request.method} {request.path} error={exc.orig!r}")
    return jsonify({'error': 'The game store is temporarily unavailable'}), StoreUnavailable.status_code


@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the ultimatum game server!'})


@main.route('/api/sessions', methods=['POST', 'OPTIONS'])
def create_session():
    if request.method == 'OPTIONS':
        return jsonify({'status': 'ok'}), 200
    data = request.get_json(silent=True) or {}
    player_id = data.get('player_id') or generate_player_id()
    session = touch_session(player_id)
    return jsonify(session.to_dict()), 201
