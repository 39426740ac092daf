"""Vote ledger - per-(round, user, proposal) vote counts under a credit budget

Every cast runs read-validate-write as one unit inside
`store.lock_allocation(round_id, user_id)`: two concurrent +1s from the same
user on different proposals can never both validate against the same stale
allocation. Casts from different users share no lock.
"""

from dataclasses import dataclass
from typing import Dict, Optional

from config import get_logger
from decision.budget import DEFAULT_CREDIT_BUDGET, BudgetCheck, check_delta, quadratic_cost
from decision.protocols import DecisionStore, MetricsCollector, NullMetrics
from decision.retry import run_with_retries
from exceptions import (
    BudgetExceededError,
    DecisionError,
    NotAProposalError,
    ProposalNotFoundError,
    RoundNotFoundError,
    RoundNotOpenError,
    ValidationError,
)

logger = get_logger(__name__).bind(component="vote_ledger")


@dataclass(frozen=True)
class UserVotes:
    """A user's allocation for one round plus derived credit figures"""

    round_id: Optional[str]
    votes: Dict[str, int]
    total_credits_spent: int
    remaining_credits: int

    def to_dict(self) -> dict:
        return {
            "roundId": self.round_id,
            "votes": dict(self.votes),
            "totalCreditsSpent": self.total_credits_spent,
            "remainingCredits": self.remaining_credits,
        }


@dataclass(frozen=True)
class VoteResult:
    """Outcome of a cast. Expected failures come back as data, not exceptions."""

    success: bool
    new_votes: Optional[int] = None
    remaining_credits: Optional[int] = None
    error_code: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, check: BudgetCheck) -> "VoteResult":
        return cls(
            success=True,
            new_votes=check.new_vote_count,
            remaining_credits=check.remaining_credits,
        )

    @classmethod
    def failed(cls, error: DecisionError) -> "VoteResult":
        remaining = error.remaining_credits if isinstance(error, BudgetExceededError) else None
        return cls(
            success=False,
            remaining_credits=remaining,
            error_code=error.code,
            message=error.message,
        )

    def to_dict(self) -> dict:
        if self.success:
            return {
                "success": True,
                "newVotes": self.new_votes,
                "remainingCredits": self.remaining_credits,
            }
        data = {"success": False, "errorCode": self.error_code, "message": self.message}
        if self.remaining_credits is not None:
            data["remainingCredits"] = self.remaining_credits
        return data


class VoteLedger:
    """Reads and mutates vote allocations through a DecisionStore"""

    def __init__(
        self,
        store: DecisionStore,
        credit_budget: int = DEFAULT_CREDIT_BUDGET,
        max_attempts: int = 3,
        retry_delay: float = 0.05,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.credit_budget = credit_budget
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.metrics = metrics or NullMetrics()

    async def get_user_votes(self, round_id: Optional[str], user_id: str) -> UserVotes:
        """Current allocation for (round, user); readable in any round status.

        A missing round (session without rounds yet) reads as an empty
        allocation with the full budget available.
        """
        votes: Dict[str, int] = {}
        if round_id is not None:
            raw = await self.store.get_user_votes(round_id, user_id)
            votes = {pid: count for pid, count in raw.items() if count > 0}

        spent = quadratic_cost(votes)
        return UserVotes(
            round_id=round_id,
            votes=votes,
            total_credits_spent=spent,
            remaining_credits=self.credit_budget - spent,
        )

    async def cast_vote(
        self,
        round_id: str,
        user_id: str,
        proposal_id: str,
        delta: int,
    ) -> VoteResult:
        """Apply `delta` to the user's count on `proposal_id` in `round_id`.

        Raises:
            ValidationError: delta is not an integer (checked before any store access)

        Returns:
            VoteResult - success with new count and remaining credits, or the
            failure code (ROUND_NOT_FOUND, ROUND_NOT_OPEN, RESPONSE_NOT_FOUND,
            NOT_A_PROPOSAL, NEGATIVE_VOTES, BUDGET_EXCEEDED)
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("Vote delta must be an integer", field="delta", value=delta)

        try:
            round_ = await self.store.get_round(round_id)
            if round_ is None:
                raise RoundNotFoundError(round_id)
            # Fast path; re-checked under the allocation lock
            if not round_.is_open:
                raise RoundNotOpenError(round_id, round_.status)

            proposal = await self.store.get_proposal(proposal_id)
            if proposal is None:
                raise ProposalNotFoundError(proposal_id)
            if (
                proposal.session_id != round_.session_id
                or proposal.proposal_set != round_.proposal_set
            ):
                raise NotAProposalError(proposal_id, round_id)

            check = await run_with_retries(
                "cast_vote",
                lambda: self._apply_delta(round_id, user_id, proposal_id, delta),
                max_attempts=self.max_attempts,
                base_delay=self.retry_delay,
                metrics=self.metrics,
            )
        except DecisionError as e:
            self.metrics.votes_cast.labels(outcome=e.code).inc()
            logger.info(
                "vote rejected",
                round_id=round_id,
                user_id=user_id,
                proposal_id=proposal_id,
                delta=delta,
                error_code=e.code,
            )
            return VoteResult.failed(e)

        self.metrics.votes_cast.labels(outcome="OK").inc()
        logger.info(
            "vote cast",
            round_id=round_id,
            user_id=user_id,
            proposal_id=proposal_id,
            delta=delta,
            new_votes=check.new_vote_count,
            remaining_credits=check.remaining_credits,
        )
        return VoteResult.ok(check)

    async def _apply_delta(
        self, round_id: str, user_id: str, proposal_id: str, delta: int
    ) -> BudgetCheck:
        """One atomic attempt: status gate, budget check, write."""
        async with self.store.lock_allocation(round_id, user_id) as allocation:
            if allocation.round is None:
                raise RoundNotFoundError(round_id)
            if not allocation.round.is_open:
                raise RoundNotOpenError(round_id, allocation.round.status)

            check = check_delta(allocation.votes, proposal_id, delta, self.credit_budget)
            await allocation.write(proposal_id, check.new_vote_count)
            return check
