from typing import Iterable, Tuple

TOTAL_ROUNDS = 10
TOTAL_AMOUNT = 40
POINTS_PER_DOLLAR = 10


def compute_payouts(proposal_amount: float, accepted: bool) -> Tuple[float, float]:
    """Return (proposer_payout, responder_payout) for a settled round.

    Accepted: the proposer keeps the remainder of the pot and the responder
    gets the offer. Rejected: both get nothing.
    """
    if not accepted:
        return 0, 0
    return TOTAL_AMOUNT - proposal_amount, proposal_amount


def finalize(outcomes: Iterable) -> float:
    """Sum `my_payout` over a player's round outcomes."""
    return sum(outcome.my_payout for outcome in outcomes)


def to_dollars(points: float) -> float:
    return points / POINTS_PER_DOLLAR
