import json

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ultimatum import db
from ultimatum.models import Demographics, Game, GamePlayer
from .errors import InvalidInput, NotFound, NotInGame, PreconditionFailed

GENERATION_STATUSES = ('first', 'second', 'third-plus', 'us-born')
DEFAULT_CURRENT_COUNTRY = 'United States'


def _text(payload: dict, key: str) -> str:
    value = payload.get(key)
    return value.strip() if isinstance(value, str) else ''


def _countries(entries) -> list:
    if not isinstance(entries, list):
        raise InvalidInput('countries_lived must be a list')
    filled = []
    for entry in entries:
        if not isinstance(entry, dict):
            raise InvalidInput('Each countries_lived entry must be an object')
        country = _text(entry, 'country')
        if not country:
            continue
        filled.append({
            'country': country,
            'start_date': _text(entry, 'start_date'),
            'end_date': _text(entry, 'end_date'),
        })
    if not filled:
        raise InvalidInput('Please add at least one country where you have lived')
    return filled


def record_demographics(player_id: str, game_id: int, payload: dict) -> Demographics:
    """Validate and store a player's answers. Write-once per player and game."""
    date_of_birth = _text(payload, 'date_of_birth')
    birth_country = _text(payload, 'birth_country')
    if not date_of_birth or not birth_country:
        raise InvalidInput('Please fill in Date of Birth and Birth Country fields')
    generation_status = _text(payload, 'generation_status')
    if generation_status not in GENERATION_STATUSES:
        raise InvalidInput(f"generation_status must be one of {', '.join(GENERATION_STATUSES)}")
    countries = _countries(payload.get('countries_lived') or [])

    if db.session.get(Game, game_id) is None:
        raise NotFound(f'Game {game_id} not found')
    if GamePlayer.query.filter_by(game_id=game_id, player_id=player_id).first() is None:
        raise NotInGame(f'Player {player_id} did not play game {game_id}')

    record = Demographics(
        player_id=player_id,
        game_id=game_id,
        date_of_birth=date_of_birth,
        birth_country=birth_country,
        current_country=_text(payload, 'current_country') or DEFAULT_CURRENT_COUNTRY,
        generation_status=generation_status,
        countries_lived=json.dumps(countries),
    )
    db.session.add(record)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise PreconditionFailed('Demographic data was already submitted for this game') from exc
    current_app.logger.info(f"[demographics] game={game_id} player={player_id} countries={len(countries)}")
    return record
