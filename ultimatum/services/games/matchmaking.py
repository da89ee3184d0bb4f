import time
from typing import Callable, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ultimatum import db
from ultimatum.models import Game, GamePlayer, Session, utcnow
from .errors import InvalidInput, NotFound, StoreUnavailable
from .retries import retry_transient


def _require_player_id(player_id) -> str:
    if not isinstance(player_id, str) or not player_id.strip():
        raise InvalidInput('player_id is required')
    return player_id.strip()


def touch_session(player_id: str) -> Session:
    """Create or refresh the presence row for a player."""
    player_id = _require_player_id(player_id)
    session = db.session.get(Session, player_id)
    if session is None:
        session = Session(player_id=player_id)
        db.session.add(session)
        try:
            db.session.commit()
            return session
        except IntegrityError:
            # Another request created it between our read and insert
            db.session.rollback()
            session = db.session.get(Session, player_id)
    session.updated_at = utcnow()
    db.session.commit()
    return session


def _join_once(player_id: str) -> Optional[int]:
    """One matchmaking attempt. Returns None if the chosen lobby closed under us."""
    game = (
        Game.query.filter_by(status='waiting')
        .order_by(Game.created_at.asc(), Game.id.asc())
        .first()
    )
    created = game is None
    if created:
        game = Game(status='waiting')
        db.session.add(game)
        db.session.flush()

    existing = GamePlayer.query.filter_by(game_id=game.id, player_id=player_id).first()
    if existing is None:
        db.session.add(GamePlayer(game_id=game.id, player_id=player_id))
        try:
            db.session.flush()
        except IntegrityError:
            # A retry of ours raced us in; membership already exists
            db.session.rollback()
            current_app.logger.info(f"[join] game={game.id} player={player_id} duplicate insert ignored")
            return game.id

    # Conditional touch: locks the game row and fails if activation won the race
    still_waiting = (
        Game.query.filter_by(id=game.id, status='waiting')
        .update({'status': 'waiting'}, synchronize_session=False)
    )
    if not still_waiting:
        db.session.rollback()
        current_app.logger.info(f"[join] game={game.id} player={player_id} lobby closed, reselecting")
        return None

    db.session.commit()
    current_app.logger.info(
        f"[join] game={game.id} player={player_id} created={created} already_joined={existing is not None}"
    )
    return game.id


def join(player_id: str, sleep: Callable[[float], None] = time.sleep) -> int:
    """Place a player in the oldest waiting lobby, creating one if none exists.

    Idempotent per player: retries never produce a second roster row.
    Transient store errors are retried with a fixed backoff, a bounded
    number of times, then surface as StoreUnavailable.
    """
    player_id = _require_player_id(player_id)
    cfg = current_app.config
    attempts = max(1, int(cfg.get('MATCHMAKING_MAX_ATTEMPTS', 5)))
    backoff = float(cfg.get('MATCHMAKING_RETRY_SEC', 3))

    for _ in range(attempts):
        game_id = retry_transient(
            lambda: _join_once(player_id),
            label=f'join player={player_id}',
            attempts=attempts,
            backoff=backoff,
            sleep=sleep,
        )
        if game_id is not None:
            return game_id
    raise StoreUnavailable('Could not find an open lobby')


def _roster_rows(game_id: int):
    return (
        GamePlayer.query.filter_by(game_id=game_id)
        .order_by(GamePlayer.joined_at.asc(), GamePlayer.id.asc())
        .all()
    )


def roster(game_id: int):
    """Player ids of a game in join order."""
    return [row.player_id for row in _roster_rows(game_id)]


def lobby_snapshot(game_id: int) -> dict:
    game = db.session.get(Game, game_id)
    if game is None:
        raise NotFound(f'Game {game_id} not found')
    rows = _roster_rows(game_id)
    min_players = int(current_app.config.get('MIN_PLAYERS', 2))
    count = len(rows)
    payload = game.to_dict()
    payload['players'] = [row.to_dict() for row in rows]
    payload['player_count'] = count
    payload['can_start'] = game.status == 'waiting' and count >= min_players and count % 2 == 0
    return payload
