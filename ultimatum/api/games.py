from flask import Blueprint, jsonify, request, current_app
from ultimatum import socketio
from ultimatum.services.games.coordinator import (
    WAITING_STATES,
    load_round,
    player_outcomes,
    submit_decision,
    submit_proposal,
    wait_for_peer,
)
from ultimatum.services.games.demographics import record_demographics
from ultimatum.services.games.errors import InvalidInput, RoundStalled
from ultimatum.services.games.matchmaking import join, lobby_snapshot, touch_session
from ultimatum.services.games.polling import Poller
from ultimatum.services.games.retries import retry_transient
from ultimatum.services.games.roles import start_game as svc_start_game
from ultimatum.services.games.scoring import TOTAL_ROUNDS, finalize, to_dollars


games = Blueprint('games', __name__)


def _notify(game_id: int) -> None:
    socketio.emit('state_update', {'game_id': game_id}, to=f"game:{game_id}", namespace='/ws')


def _player_id(data) -> str:
    player_id = data.get('player_id')
    if not isinstance(player_id, str) or not player_id.strip():
        raise InvalidInput('player_id is required')
    return player_id.strip()


def _load_round(game_id: int, player_id: str, round_number: int):
    return retry_transient(lambda: load_round(game_id, player_id, round_number),
                           label=f'load game={game_id} round={round_number} player={player_id}')


@games.route('/join', methods=['POST'])
def join_game():
    data = request.get_json(silent=True) or {}
    player_id = _player_id(data)
    touch_session(player_id)
    game_id = join(player_id)
    _notify(game_id)
    return jsonify({'game_id': game_id, 'player_id': player_id})


@games.route('/<int:game_id>/lobby', methods=['GET'])
def get_lobby(game_id):
    return jsonify(retry_transient(lambda: lobby_snapshot(game_id), label=f'lobby game={game_id}'))


@games.route('/<int:game_id>/start', methods=['POST'])
def start_game(game_id):
    data = request.get_json(silent=True) or {}
    player_id = _player_id(data)
    game = svc_start_game(game_id, player_id)
    _notify(game_id)
    return jsonify(game.to_dict())


@games.route('/<int:game_id>/rounds/<int:round_number>', methods=['GET'])
def get_round(game_id, round_number):
    player_id = _player_id(request.args)
    view = _load_round(game_id, player_id, round_number)
    stalled = False
    if request.args.get('wait') in ('1', 'true') and view.state in WAITING_STATES:
        cfg = current_app.config
        timeout = min(float(cfg.get('POLL_TIMEOUT_SEC', 60)), float(cfg.get('LONG_POLL_TIMEOUT_SEC', 20)))
        poller = Poller(interval=float(cfg.get('POLL_INTERVAL_SEC', 2)), timeout=timeout)
        try:
            view = wait_for_peer(view, poller)
        except RoundStalled:
            stalled = True
    payload = view.to_dict()
    payload['stalled'] = stalled
    return jsonify(payload)


@games.route('/<int:game_id>/rounds/<int:round_number>/proposal', methods=['POST'])
def post_proposal(game_id, round_number):
    data = request.get_json(silent=True) or {}
    player_id = _player_id(data)
    amount = data.get('amount')
    retry_transient(lambda: submit_proposal(game_id, player_id, round_number, amount),
                    label=f'proposal game={game_id} round={round_number}')
    _notify(game_id)
    view = _load_round(game_id, player_id, round_number)
    return jsonify(view.to_dict()), 201


@games.route('/<int:game_id>/rounds/<int:round_number>/decision', methods=['POST'])
def post_decision(game_id, round_number):
    data = request.get_json(silent=True) or {}
    player_id = _player_id(data)
    accepted = data.get('accepted')
    retry_transient(lambda: submit_decision(game_id, player_id, round_number, accepted),
                    label=f'decision game={game_id} round={round_number}')
    _notify(game_id)
    view = _load_round(game_id, player_id, round_number)
    return jsonify(view.to_dict())


@games.route('/<int:game_id>/results', methods=['GET'])
def get_results(game_id):
    player_id = _player_id(request.args)
    outcomes = retry_transient(lambda: player_outcomes(game_id, player_id), label=f'results game={game_id}')
    total_points = finalize(outcomes)
    return jsonify({
        'game_id': game_id,
        'player_id': player_id,
        'complete': len(outcomes) == TOTAL_ROUNDS,
        'rounds': [o.to_dict() for o in outcomes],
        'total_points': total_points,
        'dollars': to_dollars(total_points),
    })


@games.route('/<int:game_id>/demographics', methods=['POST'])
def post_demographics(game_id):
    data = request.get_json(silent=True) or {}
    player_id = _player_id(data)
    record = record_demographics(player_id, game_id, data)
    return jsonify(record.to_dict()), 201
