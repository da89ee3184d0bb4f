"""Role scheduling and game activation.

A schedule is a list with one entry per round; each entry is the list of
(proposer, responder) pairs for that round. Over a game every player
proposes in exactly half of the rounds and responds in the other half.
"""
import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ultimatum import db
from ultimatum.models import Game, PlayerRole
from .errors import NotFound, NotInGame, PreconditionFailed, RosterError
from .matchmaking import roster as load_roster
from .scoring import TOTAL_ROUNDS


Pairing = Tuple[str, str]
Schedule = List[List[Pairing]]


@dataclass
class RoleCounter:
    proposed: int = 0
    responded: int = 0


def validate_roster(roster: Sequence[str], min_players: int = 2) -> None:
    if len(set(roster)) != len(roster):
        raise RosterError('Roster contains duplicate players')
    if len(roster) < min_players:
        raise RosterError(f'At least {min_players} players are required to start')
    if len(roster) % 2 != 0:
        raise RosterError('An even number of players is required to start')


def _pair(proposers: List[str], responders: List[str], partners: Dict[str, Set[str]]) -> List[Pairing]:
    # Prefer a responder the proposer has not met yet; fall back to whoever is left
    pool = list(responders)
    pairs = []
    for proposer in proposers:
        pick = next((r for r in pool if r not in partners[proposer]), pool[0])
        pool.remove(pick)
        pairs.append((proposer, pick))
    return pairs


def _balanced_schedule(roster: Sequence[str], total_rounds: int, rng: random.Random) -> Schedule:
    quota = total_rounds // 2
    half = len(roster) // 2
    counters = {pid: RoleCounter() for pid in roster}
    partners: Dict[str, Set[str]] = {pid: set() for pid in roster}
    schedule: Schedule = []

    for _ in range(total_rounds):
        can_propose = [pid for pid in roster if counters[pid].proposed < quota]
        can_respond = [pid for pid in roster if counters[pid].responded < quota]
        rng.shuffle(can_propose)
        rng.shuffle(can_respond)

        # Players with the most proposals still owed go first. Anyone who owes a
        # proposal in every remaining round is always picked, and nobody who is
        # done proposing is, so the quota stays reachable.
        can_propose.sort(key=lambda pid: counters[pid].proposed)
        proposers = can_propose[:half]
        chosen = set(proposers)
        responders = [pid for pid in can_respond if pid not in chosen][:half]
        if len(responders) != half:
            break

        pairs = _pair(proposers, responders, partners)
        for proposer, responder in pairs:
            counters[proposer].proposed += 1
            counters[responder].responded += 1
            partners[proposer].add(responder)
            partners[responder].add(proposer)
        schedule.append(pairs)

    return schedule


def rotation_schedule(roster: Sequence[str], total_rounds: int = TOTAL_ROUNDS) -> Schedule:
    """Deterministic fallback: player i proposes in round r when i + r is even."""
    schedule: Schedule = []
    for r in range(total_rounds):
        proposers = [pid for i, pid in enumerate(roster) if (i + r) % 2 == 0]
        responders = [pid for i, pid in enumerate(roster) if (i + r) % 2 == 1]
        shift = (r // 2) % len(responders)
        responders = responders[shift:] + responders[:shift]
        schedule.append(list(zip(proposers, responders)))
    return schedule


def is_balanced(schedule: Schedule, roster: Sequence[str], total_rounds: int = TOTAL_ROUNDS) -> bool:
    if len(schedule) != total_rounds:
        return False
    counters = {pid: RoleCounter() for pid in roster}
    for pairs in schedule:
        seen = set()
        for proposer, responder in pairs:
            if proposer == responder or proposer in seen or responder in seen:
                return False
            if proposer not in counters or responder not in counters:
                return False
            seen.update((proposer, responder))
            counters[proposer].proposed += 1
            counters[responder].responded += 1
        if len(seen) != len(roster):
            return False
    quota = total_rounds // 2
    return all(c.proposed == quota and c.responded == quota for c in counters.values())


def schedule_roles(roster: Sequence[str], total_rounds: int = TOTAL_ROUNDS,
                   rng: Optional[random.Random] = None) -> Schedule:
    if total_rounds % 2 != 0:
        raise ValueError('total_rounds must be even')
    validate_roster(roster)
    roster = list(roster)
    schedule = _balanced_schedule(roster, total_rounds, rng or random.Random())
    if not is_balanced(schedule, roster, total_rounds):
        current_app.logger.warning(f"[roles-fallback] players={len(roster)} using rotation schedule")
        schedule = rotation_schedule(roster, total_rounds)
    return schedule


def assign_roles(game_id: int, roster: Sequence[str], rng: Optional[random.Random] = None) -> List[PlayerRole]:
    """Add every PlayerRole row for the game to the current transaction.

    The caller commits; the rows become visible all at once or not at all.
    """
    validate_roster(roster, int(current_app.config.get('MIN_PLAYERS', 2)))
    rows = []
    for round_number, pairs in enumerate(schedule_roles(roster, TOTAL_ROUNDS, rng), start=1):
        for proposer, responder in pairs:
            rows.append(PlayerRole(game_id=game_id, player_id=proposer, round_number=round_number,
                                   role='proposer', matched_with=responder))
            rows.append(PlayerRole(game_id=game_id, player_id=responder, round_number=round_number,
                                   role='responder', matched_with=proposer))
    db.session.add_all(rows)
    return rows


def start_game(game_id: int, player_id: str, rng: Optional[random.Random] = None) -> Game:
    """Activate a waiting game and assign roles for every round.

    Only one of several racing callers performs the activation; the others
    get the already-active game back. A rejected roster leaves the game
    waiting with no role rows.
    """
    game = db.session.get(Game, game_id)
    if game is None:
        raise NotFound(f'Game {game_id} not found')
    if game.status != 'waiting':
        return game

    claimed = (
        Game.query.filter_by(id=game_id, status='waiting')
        .update({'status': 'active', 'started_by': player_id, 'current_round': 1}, synchronize_session=False)
    )
    if not claimed:
        db.session.rollback()
        current_app.logger.info(f"[start-skip] game={game_id} player={player_id} already started")
        return db.session.get(Game, game_id)

    # Read the roster only after the claim so late joins are either in or rejected
    players = load_roster(game_id)
    try:
        if player_id not in players:
            raise NotInGame('Only players in this lobby may start the game')
        rows = assign_roles(game_id, players, rng)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise PreconditionFailed('Role assignment conflicted with existing rows; retry the start') from exc
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(
        f"[start] game={game_id} started_by={player_id} players={len(players)} role_rows={len(rows)}"
    )
    return db.session.get(Game, game_id)
