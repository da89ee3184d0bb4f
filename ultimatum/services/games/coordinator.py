"""Per-player round state machine.

Every state is derived from a fresh read of the `player_roles` and
`rounds` rows, so a client that restarts mid-round resumes where it was by
calling `load_round` again. Writes are conditional: a proposal is an
insert guarded by the pairing's unique key, a decision is an update
guarded by `responder_decision IS NULL`.
"""
import enum
import math
from dataclasses import dataclass, asdict
from typing import Callable, List, Optional

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from ultimatum import db
from ultimatum.models import Game, PlayerRole, Round, utcnow
from .errors import InvalidInput, NotFound, PreconditionFailed, RoundStalled, StoreUnavailable
from .polling import Poller, PollTimeout
from .retries import retry_transient
from .scoring import TOTAL_AMOUNT, TOTAL_ROUNDS, compute_payouts


class RoundState(str, enum.Enum):
    AWAITING_PROPOSAL_INPUT = 'awaiting_proposal_input'
    AWAITING_RESPONSE = 'awaiting_response'
    AWAITING_PROPOSAL = 'awaiting_proposal'
    AWAITING_DECISION_INPUT = 'awaiting_decision_input'
    SETTLED = 'settled'


WAITING_STATES = (RoundState.AWAITING_RESPONSE, RoundState.AWAITING_PROPOSAL)


@dataclass(frozen=True)
class RoundOutcome:
    round: int
    role: str
    matched_with: str
    proposal_amount: float
    accepted: bool
    my_payout: float

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class RoundView:
    game_id: int
    round_number: int
    player_id: str
    role: str
    matched_with: str
    state: RoundState
    proposal_amount: Optional[float] = None
    accepted: Optional[bool] = None
    proposer_payout: Optional[float] = None
    responder_payout: Optional[float] = None

    @property
    def proposer_id(self) -> str:
        return self.player_id if self.role == 'proposer' else self.matched_with

    @property
    def responder_id(self) -> str:
        return self.matched_with if self.role == 'proposer' else self.player_id

    def outcome(self) -> RoundOutcome:
        if self.state is not RoundState.SETTLED:
            raise ValueError(f'round {self.round_number} is not settled')
        payout = self.proposer_payout if self.role == 'proposer' else self.responder_payout
        return RoundOutcome(
            round=self.round_number,
            role=self.role,
            matched_with=self.matched_with,
            proposal_amount=self.proposal_amount,
            accepted=self.accepted,
            my_payout=payout or 0,
        )

    def to_dict(self):
        return {
            'game_id': self.game_id,
            'round_number': self.round_number,
            'total_rounds': TOTAL_ROUNDS,
            'total_amount': TOTAL_AMOUNT,
            'player_id': self.player_id,
            'role': self.role,
            'matched_with': self.matched_with,
            'state': self.state.value,
            'proposal_amount': self.proposal_amount,
            'accepted': self.accepted,
            'proposer_payout': self.proposer_payout,
            'responder_payout': self.responder_payout,
        }


def _derive_state(role: str, row: Optional[Round]) -> RoundState:
    if row is not None and row.responder_decision is not None:
        return RoundState.SETTLED
    has_proposal = row is not None and row.proposal_amount is not None
    if role == 'proposer':
        return RoundState.AWAITING_RESPONSE if has_proposal else RoundState.AWAITING_PROPOSAL_INPUT
    return RoundState.AWAITING_DECISION_INPUT if has_proposal else RoundState.AWAITING_PROPOSAL


def _load_role(game_id: int, player_id: str, round_number: int) -> PlayerRole:
    if not isinstance(round_number, int) or not 1 <= round_number <= TOTAL_ROUNDS:
        raise InvalidInput(f'round_number must be between 1 and {TOTAL_ROUNDS}')
    role = PlayerRole.query.filter_by(game_id=game_id, player_id=player_id, round_number=round_number).first()
    if role is None:
        if db.session.get(Game, game_id) is None:
            raise NotFound(f'Game {game_id} not found')
        raise NotFound(f'No role for player {player_id} in round {round_number}')
    return role


def _load_row(game_id: int, round_number: int, proposer_id: str, responder_id: str) -> Optional[Round]:
    return Round.query.filter_by(
        game_id=game_id,
        round_number=round_number,
        proposer_id=proposer_id,
        responder_id=responder_id,
    ).first()


def load_round(game_id: int, player_id: str, round_number: int) -> RoundView:
    role = _load_role(game_id, player_id, round_number)
    if role.role == 'proposer':
        row = _load_row(game_id, round_number, player_id, role.matched_with)
    else:
        row = _load_row(game_id, round_number, role.matched_with, player_id)
    return RoundView(
        game_id=game_id,
        round_number=round_number,
        player_id=player_id,
        role=role.role,
        matched_with=role.matched_with,
        state=_derive_state(role.role, row),
        proposal_amount=row.proposal_amount if row else None,
        accepted=row.responder_decision if row else None,
        proposer_payout=row.proposer_payout if row else None,
        responder_payout=row.responder_payout if row else None,
    )


def validate_amount(amount) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidInput('Proposal amount must be a number')
    if math.isnan(amount) or not 0 <= amount <= TOTAL_AMOUNT:
        raise InvalidInput(f'Please enter a number between 0 and {TOTAL_AMOUNT}')
    return float(amount)


def submit_proposal(game_id: int, player_id: str, round_number: int, amount) -> Round:
    amount = validate_amount(amount)
    role = _load_role(game_id, player_id, round_number)
    if role.role != 'proposer':
        raise InvalidInput(f'Player {player_id} is the responder in round {round_number}')

    row = Round(
        game_id=game_id,
        round_number=round_number,
        proposer_id=player_id,
        responder_id=role.matched_with,
        proposal_amount=amount,
    )
    db.session.add(row)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise PreconditionFailed(f'A proposal for round {round_number} was already submitted') from exc

    current_app.logger.info(
        f"[proposal] game={game_id} round={round_number} proposer={player_id} responder={role.matched_with} amount={amount}"
    )
    return row


def submit_decision(game_id: int, player_id: str, round_number: int, accepted) -> Round:
    if not isinstance(accepted, bool):
        raise InvalidInput('A decision (accept or reject) is required')
    role = _load_role(game_id, player_id, round_number)
    if role.role != 'responder':
        raise InvalidInput(f'Player {player_id} is the proposer in round {round_number}')

    row = _load_row(game_id, round_number, role.matched_with, player_id)
    if row is None or row.proposal_amount is None:
        raise PreconditionFailed(f'No proposal has been made in round {round_number} yet')

    proposer_payout, responder_payout = compute_payouts(row.proposal_amount, accepted)
    settled = (
        Round.query.filter(
            Round.id == row.id,
            Round.responder_decision.is_(None),
        )
        .update({
            'responder_decision': accepted,
            'proposer_payout': proposer_payout,
            'responder_payout': responder_payout,
            'completed_at': utcnow(),
        }, synchronize_session=False)
    )
    if not settled:
        db.session.rollback()
        raise PreconditionFailed(f'Round {round_number} was already settled')
    db.session.commit()

    current_app.logger.info(
        f"[decision] game={game_id} round={round_number} responder={player_id} accepted={accepted} "
        f"proposer_payout={proposer_payout} responder_payout={responder_payout}"
    )
    # The decision is committed; a failed bookkeeping step is caught up by the next settle
    try:
        retry_transient(lambda: _advance_game_round(game_id), label=f'round-close game={game_id}')
    except StoreUnavailable as exc:
        db.session.rollback()
        current_app.logger.warning(f"[round-close-error] game={game_id} round={round_number} error={exc.message}")
    return db.session.get(Round, row.id)


def _round_settled(game_id: int, round_number: int) -> bool:
    pairings = PlayerRole.query.filter_by(game_id=game_id, round_number=round_number, role='proposer').count()
    if not pairings:
        return False
    settled = Round.query.filter(
        Round.game_id == game_id,
        Round.round_number == round_number,
        Round.responder_decision.isnot(None),
    ).count()
    return settled >= pairings


def _advance_game_round(game_id: int) -> None:
    """Move `current_round` past every fully settled round; complete the game after the last."""
    game = db.session.get(Game, game_id)
    if game is None or game.status != 'active':
        return
    current = int(game.current_round or 1)
    nxt = current
    while nxt <= TOTAL_ROUNDS and _round_settled(game_id, nxt):
        nxt += 1
    if nxt == current:
        return

    if nxt > TOTAL_ROUNDS:
        values = {'status': 'completed', 'current_round': TOTAL_ROUNDS}
    else:
        values = {'current_round': nxt}
    moved = (
        Game.query.filter_by(id=game_id, status='active', current_round=current)
        .update(values, synchronize_session=False)
    )
    db.session.commit()
    if moved:
        current_app.logger.info(f"[round-closed] game={game_id} round {current} -> {values}")


def _reload(view: RoundView, sleep: Callable[[float], None]) -> RoundView:
    return retry_transient(
        lambda: load_round(view.game_id, view.player_id, view.round_number),
        label=f'load game={view.game_id} round={view.round_number} player={view.player_id}',
        sleep=sleep,
    )


def _submit(action: Callable[[], Round], view: RoundView, sleep: Callable[[float], None]) -> RoundView:
    label = f'submit game={view.game_id} round={view.round_number} player={view.player_id}'
    try:
        retry_transient(action, label=label, sleep=sleep)
    except PreconditionFailed as exc:
        # Someone (likely our own retry) already wrote this step; trust the store
        current_app.logger.info(f"[submit-skip] {label} reason={exc.message}")
    return _reload(view, sleep)


def wait_for_peer(view: RoundView, poller: Poller) -> RoundView:
    """Poll until the view leaves its waiting state; RoundStalled past the deadline."""
    waiting_on = view.state

    def check():
        # Each check reads in its own transaction, released before the poller sleeps
        db.session.rollback()
        fresh = load_round(view.game_id, view.player_id, view.round_number)
        db.session.rollback()
        return fresh if fresh.state is not waiting_on else None

    label = f"game={view.game_id} round={view.round_number} player={view.player_id} state={waiting_on.value}"
    try:
        return poller.wait(check, label=label)
    except PollTimeout as exc:
        current_app.logger.warning(f"[stalled] {label} timeout={poller.timeout}s")
        raise RoundStalled(
            f'Timed out waiting for {view.matched_with} in round {view.round_number}',
            game_id=view.game_id,
            player_id=view.player_id,
            round_number=view.round_number,
            state=waiting_on.value,
        ) from exc


def advance_round(game_id: int, player_id: str, round_number: int,
                  propose: Optional[Callable[[RoundView], float]] = None,
                  decide: Optional[Callable[[RoundView], bool]] = None,
                  poller: Optional[Poller] = None) -> RoundOutcome:
    """Drive one player through one round until it settles.

    `propose(view)` supplies the offer when this player proposes and
    `decide(view)` the accept/reject when it responds. Waiting on the
    matched player goes through `poller`; a wait past its timeout raises
    RoundStalled so the caller can retry or abandon the round visibly.
    Transient store errors on reads and writes are retried with the
    STORE_RETRY_SEC backoff before surfacing as StoreUnavailable.
    """
    poller = poller or Poller.from_config(current_app.config)
    view = retry_transient(
        lambda: load_round(game_id, player_id, round_number),
        label=f'load game={game_id} round={round_number} player={player_id}',
        sleep=poller.pause,
    )
    while view.state is not RoundState.SETTLED:
        if view.state is RoundState.AWAITING_PROPOSAL_INPUT:
            if propose is None:
                raise InvalidInput('A proposal amount is required')
            amount = propose(view)
            view = _submit(lambda: submit_proposal(game_id, player_id, round_number, amount), view, poller.pause)
        elif view.state is RoundState.AWAITING_DECISION_INPUT:
            if decide is None:
                raise InvalidInput('A decision (accept or reject) is required')
            accepted = decide(view)
            view = _submit(lambda: submit_decision(game_id, player_id, round_number, accepted), view, poller.pause)
        else:
            view = wait_for_peer(view, poller)
    return view.outcome()


def player_outcomes(game_id: int, player_id: str) -> List[RoundOutcome]:
    """Settled outcomes for a player in round order, rebuilt from the store."""
    roles = (
        PlayerRole.query.filter_by(game_id=game_id, player_id=player_id)
        .order_by(PlayerRole.round_number.asc())
        .all()
    )
    rows = Round.query.filter(
        Round.game_id == game_id,
        or_(Round.proposer_id == player_id, Round.responder_id == player_id),
    ).all()
    by_round = {row.round_number: row for row in rows}

    outcomes = []
    for role in roles:
        row = by_round.get(role.round_number)
        if row is None or row.responder_decision is None:
            continue
        payout = row.proposer_payout if role.role == 'proposer' else row.responder_payout
        outcomes.append(RoundOutcome(
            round=role.round_number,
            role=role.role,
            matched_with=role.matched_with,
            proposal_amount=row.proposal_amount,
            accepted=row.responder_decision,
            my_payout=payout or 0,
        ))
    return outcomes
