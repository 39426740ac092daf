"""Quadratic credit accounting

Pure computation, no I/O. Casting n votes on one proposal costs n^2 credits;
a user's spend in a round is the sum over all proposals. Spend is always
re-derived from the full allocation map handed in by the ledger rather than
tracked as a running counter, so the vote rows stay the single source of truth.
"""

from dataclasses import dataclass
from typing import Mapping

from exceptions import BudgetExceededError, NegativeVotesError, ValidationError

DEFAULT_CREDIT_BUDGET = 100


@dataclass(frozen=True)
class BudgetCheck:
    """Outcome of a successful delta validation"""

    proposal_id: str
    previous_vote_count: int
    new_vote_count: int
    cost_before: int
    cost_after: int
    remaining_credits: int


def quadratic_cost(votes: Mapping[str, int]) -> int:
    """Total credits spent for an allocation map (absent == 0)"""
    return sum(count * count for count in votes.values())


def remaining_credits(votes: Mapping[str, int], credit_budget: int = DEFAULT_CREDIT_BUDGET) -> int:
    return credit_budget - quadratic_cost(votes)


def check_delta(
    votes: Mapping[str, int],
    proposal_id: str,
    delta: int,
    credit_budget: int = DEFAULT_CREDIT_BUDGET,
) -> BudgetCheck:
    """Validate applying `delta` votes to `proposal_id` against the budget.

    The UI only ever sends +1/-1, but any integer delta is accepted here.

    Args:
        votes: The user's current allocation for the round (proposal_id -> count)
        proposal_id: Proposal receiving the delta
        delta: Signed change in vote count
        credit_budget: Credits available per user per round

    Returns:
        BudgetCheck with the new count and remaining credits

    Raises:
        ValidationError: delta is not an integer
        NegativeVotesError: the new count would drop below zero
        BudgetExceededError: the quadratic cost after the change exceeds the budget
    """
    # bool is an int subclass; True is not a vote delta
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("Vote delta must be an integer", field="delta", value=delta)

    current = votes.get(proposal_id, 0)
    new_count = current + delta
    if new_count < 0:
        raise NegativeVotesError(proposal_id, current, delta)

    cost_before = quadratic_cost(votes)
    cost_after = cost_before - current * current + new_count * new_count
    if cost_after > credit_budget:
        raise BudgetExceededError(
            cost_after=cost_after,
            credit_budget=credit_budget,
            remaining_credits=credit_budget - cost_before,
        )

    return BudgetCheck(
        proposal_id=proposal_id,
        previous_vote_count=current,
        new_vote_count=new_count,
        cost_before=cost_before,
        cost_after=cost_after,
        remaining_credits=credit_budget - cost_after,
    )
