import pytest
from sqlalchemy.exc import OperationalError

from ultimatum import db
from ultimatum.models import Game, PlayerRole, Round
from ultimatum.services.games import coordinator
from ultimatum.services.games.coordinator import (
    RoundState,
    advance_round,
    load_round,
    player_outcomes,
    submit_decision,
    submit_proposal,
    wait_for_peer,
)
from ultimatum.services.games.errors import (
    InvalidInput,
    NotFound,
    PreconditionFailed,
    RoundStalled,
    StoreUnavailable,
)
from ultimatum.services.games.polling import Poller
from ultimatum.services.games.scoring import TOTAL_AMOUNT, TOTAL_ROUNDS


def _pair(game_id, round_number):
    """(proposer, responder) of the first pairing in a round."""
    row = PlayerRole.query.filter_by(game_id=game_id, round_number=round_number, role='proposer').first()
    return row.player_id, row.matched_with


def _poller(fake_clock, on_sleep=None, timeout=60):
    def sleep(seconds):
        fake_clock.sleep(seconds)
        if on_sleep is not None:
            on_sleep()
    return Poller(interval=2, timeout=timeout, sleep=sleep, clock=fake_clock)


def test_states_follow_the_stored_rows(started_game):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)

    assert load_round(game_id, proposer, 1).state is RoundState.AWAITING_PROPOSAL_INPUT
    assert load_round(game_id, responder, 1).state is RoundState.AWAITING_PROPOSAL

    submit_proposal(game_id, proposer, 1, 15)
    assert load_round(game_id, proposer, 1).state is RoundState.AWAITING_RESPONSE
    view = load_round(game_id, responder, 1)
    assert view.state is RoundState.AWAITING_DECISION_INPUT
    assert view.proposal_amount == 15

    submit_decision(game_id, responder, 1, True)
    assert load_round(game_id, proposer, 1).state is RoundState.SETTLED
    assert load_round(game_id, responder, 1).state is RoundState.SETTLED


def test_accepted_offer_splits_the_pot(started_game):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    submit_proposal(game_id, proposer, 1, 15)
    row = submit_decision(game_id, responder, 1, True)
    assert row.proposer_payout == 25
    assert row.responder_payout == 15
    assert row.completed_at is not None


def test_rejected_offer_pays_nothing(started_game):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    submit_proposal(game_id, proposer, 1, 15)
    row = submit_decision(game_id, responder, 1, False)
    assert row.proposer_payout == 0
    assert row.responder_payout == 0


def test_duplicate_decision_keeps_settled_payouts(started_game):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    submit_proposal(game_id, proposer, 1, 15)
    submit_decision(game_id, responder, 1, True)
    with pytest.raises(PreconditionFailed):
        submit_decision(game_id, responder, 1, False)
    row = Round.query.filter_by(game_id=game_id, round_number=1).one()
    assert row.responder_decision is True
    assert (row.proposer_payout, row.responder_payout) == (25, 15)


def test_duplicate_proposal_is_rejected(started_game):
    game_id = started_game('a', 'b')
    proposer, _ = _pair(game_id, 1)
    submit_proposal(game_id, proposer, 1, 10)
    with pytest.raises(PreconditionFailed):
        submit_proposal(game_id, proposer, 1, 30)
    assert Round.query.filter_by(game_id=game_id, round_number=1).one().proposal_amount == 10


@pytest.mark.parametrize('amount', [-1, TOTAL_AMOUNT + 1, 'ten', None, True, float('nan')])
def test_invalid_amount_is_rejected_before_writing(started_game, amount):
    game_id = started_game('a', 'b')
    proposer, _ = _pair(game_id, 1)
    with pytest.raises(InvalidInput):
        submit_proposal(game_id, proposer, 1, amount)
    assert Round.query.filter_by(game_id=game_id).count() == 0


def test_boundary_amounts_are_allowed(started_game):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    submit_proposal(game_id, proposer, 1, TOTAL_AMOUNT)
    row = submit_decision(game_id, responder, 1, True)
    assert (row.proposer_payout, row.responder_payout) == (0, TOTAL_AMOUNT)


def test_wrong_role_and_missing_inputs(started_game):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    with pytest.raises(InvalidInput):
        submit_proposal(game_id, responder, 1, 10)
    with pytest.raises(PreconditionFailed):
        submit_decision(game_id, responder, 1, True)
    submit_proposal(game_id, proposer, 1, 10)
    with pytest.raises(InvalidInput):
        submit_decision(game_id, proposer, 1, True)
    with pytest.raises(InvalidInput):
        submit_decision(game_id, responder, 1, None)


def test_unknown_game_and_round(started_game):
    game_id = started_game('a', 'b')
    with pytest.raises(NotFound):
        load_round(game_id + 100, 'a', 1)
    with pytest.raises(NotFound):
        load_round(game_id, 'nobody', 1)
    with pytest.raises(InvalidInput):
        load_round(game_id, 'a', TOTAL_ROUNDS + 1)


def test_advance_round_proposer_waits_for_decision(started_game, fake_clock):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)

    def responder_acts():
        if len(fake_clock.sleeps) == 2:
            submit_decision(game_id, responder, 1, True)

    outcome = advance_round(game_id, proposer, 1, propose=lambda view: 15,
                            poller=_poller(fake_clock, responder_acts))
    assert outcome.role == 'proposer'
    assert outcome.matched_with == responder
    assert outcome.proposal_amount == 15
    assert outcome.accepted is True
    assert outcome.my_payout == 25
    assert fake_clock.sleeps == [2, 2]


def test_advance_round_responder_waits_for_proposal(started_game, fake_clock):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    seen = []

    def decide(view):
        seen.append(view.proposal_amount)
        return False

    outcome = advance_round(game_id, responder, 1, decide=decide,
                            poller=_poller(fake_clock, lambda: submit_proposal(game_id, proposer, 1, 12)))
    assert seen == [12]
    assert outcome.role == 'responder'
    assert outcome.accepted is False
    assert outcome.my_payout == 0


def test_advance_round_reports_stall(started_game, fake_clock):
    game_id = started_game('a', 'b')
    proposer, _ = _pair(game_id, 1)
    with pytest.raises(RoundStalled) as excinfo:
        advance_round(game_id, proposer, 1, propose=lambda view: 20, poller=_poller(fake_clock, timeout=60))
    assert excinfo.value.state == RoundState.AWAITING_RESPONSE.value
    assert sum(fake_clock.sleeps) == 60
    # The proposal stays stored so a later call resumes from it
    assert load_round(game_id, proposer, 1).state is RoundState.AWAITING_RESPONSE


def test_advance_round_resumes_without_resubmitting(started_game, fake_clock):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    submit_proposal(game_id, proposer, 1, 18)
    submit_decision(game_id, responder, 1, True)

    def must_not_ask(view):
        raise AssertionError('settled rounds need no input')

    outcome = advance_round(game_id, proposer, 1, propose=must_not_ask, poller=_poller(fake_clock))
    assert outcome.my_payout == 22
    assert fake_clock.sleeps == []


def test_advance_round_needs_input_callback(started_game):
    game_id = started_game('a', 'b')
    proposer, _ = _pair(game_id, 1)
    with pytest.raises(InvalidInput):
        advance_round(game_id, proposer, 1)


def test_game_advances_and_completes(started_game):
    game_id = started_game('a', 'b', 'c', 'd')
    for round_number in range(1, TOTAL_ROUNDS + 1):
        pairs = PlayerRole.query.filter_by(game_id=game_id, round_number=round_number, role='proposer').all()
        for index, role in enumerate(pairs):
            submit_proposal(game_id, role.player_id, round_number, 20)
            submit_decision(game_id, role.matched_with, round_number, True)
            game = db.session.get(Game, game_id)
            if index < len(pairs) - 1:
                assert game.current_round == round_number
        game = db.session.get(Game, game_id)
        if round_number < TOTAL_ROUNDS:
            assert game.status == 'active'
            assert game.current_round == round_number + 1
    game = db.session.get(Game, game_id)
    assert game.status == 'completed'
    assert game.current_round == TOTAL_ROUNDS


def test_rounds_settled_out_of_order_catch_up(started_game):
    game_id = started_game('a', 'b')
    for round_number in (2, 1):
        proposer, responder = _pair(game_id, round_number)
        submit_proposal(game_id, proposer, round_number, 10)
        submit_decision(game_id, responder, round_number, True)
    assert db.session.get(Game, game_id).current_round == 3


def test_player_outcomes_are_rebuilt_from_the_store(started_game):
    game_id = started_game('a', 'b')
    for round_number in range(1, 4):
        proposer, responder = _pair(game_id, round_number)
        submit_proposal(game_id, proposer, round_number, 10)
        submit_decision(game_id, responder, round_number, round_number != 2)

    outcomes = player_outcomes(game_id, 'a')
    assert [o.round for o in outcomes] == [1, 2, 3]
    for outcome in outcomes:
        expected = 0 if outcome.round == 2 else (30 if outcome.role == 'proposer' else 10)
        assert outcome.my_payout == expected


def test_waiting_releases_the_read_transaction_between_checks(started_game, fake_clock):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    submit_proposal(game_id, proposer, 1, 15)
    open_while_sleeping = []

    def responder_acts():
        open_while_sleeping.append(db.session().in_transaction())
        if len(open_while_sleeping) == 2:
            submit_decision(game_id, responder, 1, True)

    view = wait_for_peer(load_round(game_id, proposer, 1), _poller(fake_clock, responder_acts))
    assert view.state is RoundState.SETTLED
    assert open_while_sleeping == [False, False]


def test_advance_round_retries_transient_store_errors(started_game, fake_clock, monkeypatch):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    real = coordinator.submit_proposal
    calls = []

    def flaky(*args):
        calls.append(args)
        if len(calls) == 1:
            raise OperationalError('INSERT INTO rounds', {}, Exception('connection reset'))
        return real(*args)

    def responder_acts():
        if len(calls) == 2 and load_round(game_id, responder, 1).state is RoundState.AWAITING_DECISION_INPUT:
            submit_decision(game_id, responder, 1, True)

    monkeypatch.setattr(coordinator, 'submit_proposal', flaky)
    outcome = advance_round(game_id, proposer, 1, propose=lambda view: 15,
                            poller=_poller(fake_clock, responder_acts))
    assert len(calls) == 2
    assert outcome.my_payout == 25
    # One zero-second store backoff, then one poll interval
    assert fake_clock.sleeps == [0, 2]
    assert Round.query.filter_by(game_id=game_id, round_number=1).count() == 1


def test_advance_round_gives_up_on_a_dead_store(started_game, fake_clock, monkeypatch, flask_app):
    game_id = started_game('a', 'b')
    proposer, _ = _pair(game_id, 1)

    def broken(*args):
        raise OperationalError('INSERT INTO rounds', {}, Exception('database is down'))

    monkeypatch.setattr(coordinator, 'submit_proposal', broken)
    with pytest.raises(StoreUnavailable):
        advance_round(game_id, proposer, 1, propose=lambda view: 15, poller=_poller(fake_clock))
    assert len(fake_clock.sleeps) == flask_app.config['STORE_MAX_ATTEMPTS'] - 1
    assert load_round(game_id, proposer, 1).state is RoundState.AWAITING_PROPOSAL_INPUT


def test_decision_survives_round_bookkeeping_failure(started_game, monkeypatch):
    game_id = started_game('a', 'b')
    proposer, responder = _pair(game_id, 1)
    submit_proposal(game_id, proposer, 1, 15)

    def broken(game_id):
        raise OperationalError('UPDATE games', {}, Exception('database is locked'))

    monkeypatch.setattr(coordinator, '_advance_game_round', broken)
    row = submit_decision(game_id, responder, 1, True)
    assert row.responder_decision is True
    assert row.responder_payout == 15
    assert db.session.get(Game, game_id).current_round == 1

    # The next settled round catches the game up
    monkeypatch.undo()
    proposer, responder = _pair(game_id, 2)
    submit_proposal(game_id, proposer, 2, 15)
    submit_decision(game_id, responder, 2, True)
    assert db.session.get(Game, game_id).current_round == 3
