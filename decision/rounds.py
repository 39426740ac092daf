"""Round state machine - voting_open -> voting_closed -> results_generated

Closing is two steps, each its own atomic unit:

1. The status flip `voting_open -> voting_closed` is a compare-and-swap in the
   store (`mark_round_closed`). Its return value tells the caller whether it
   won the race.
2. Result persistence runs under `lock_result_slot`. Whoever enters first
   with no snapshot present aggregates and writes it together with the
   `results_generated` flip; everyone after reads that snapshot.

A round left `voting_closed` without a snapshot (aggregation crashed after the
flip) is finished by the next close call rather than treated as terminal.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from config import get_logger
from database.models import (
    ROUND_RESULTS_GENERATED,
    ROUND_VOTING_CLOSED,
    ROUND_VOTING_OPEN,
    DecisionResult,
    DecisionRound,
    DecisionSession,
    VISIBILITY_HIDDEN,
    SelectedStatement,
)
from decision.aggregator import ResultsAggregator
from decision.protocols import DecisionStore, MembershipChecker, MetricsCollector, NullMetrics
from decision.retry import run_with_retries
from exceptions import (
    ConversationNotFoundError,
    ForbiddenError,
    InvalidTransitionError,
    NotDecisionSessionError,
    RoundNotFinalizedError,
    RoundNotFoundError,
    ValidationError,
)

logger = get_logger(__name__).bind(component="round_state_machine")

# Allowed single-step transitions; results_generated is terminal
TRANSITIONS = {
    ROUND_VOTING_OPEN: ROUND_VOTING_CLOSED,
    ROUND_VOTING_CLOSED: ROUND_RESULTS_GENERATED,
}


def ensure_transition(current: str, target: str) -> None:
    """Raise InvalidTransitionError unless `current -> target` is one legal step"""
    if TRANSITIONS.get(current) != target:
        raise InvalidTransitionError(current, target)


def ensure_can_open_next(latest: Optional[DecisionRound]) -> None:
    """A new round may only follow a round whose results are generated"""
    if latest is not None and not latest.is_finalized:
        raise RoundNotFinalizedError(latest.id, latest.status)


class RoundStateMachine:
    """Gates closing and opening of rounds for one store"""

    def __init__(
        self,
        store: DecisionStore,
        membership: MembershipChecker,
        aggregator: ResultsAggregator,
        max_attempts: int = 3,
        retry_delay: float = 0.05,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.membership = membership
        self.aggregator = aggregator
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.metrics = metrics or NullMetrics()

    async def _retry(self, operation: str, func):
        return await run_with_retries(
            operation,
            func,
            max_attempts=self.max_attempts,
            base_delay=self.retry_delay,
            metrics=self.metrics,
        )

    async def _require_admin(self, user_id: str, session: DecisionSession) -> None:
        if not await self.membership.is_admin(user_id, session.hive_id):
            raise ForbiddenError()

    async def close_round(self, round_id: str, acting_user_id: str) -> DecisionResult:
        """Close a round and return its result snapshot.

        Idempotent: closing an already closed or finalized round returns the
        stored snapshot without re-tallying. Concurrent closes of the same
        round all return the same snapshot and aggregation runs once.

        Raises:
            RoundNotFoundError: Round (or its session) does not exist
            ForbiddenError: Acting user is not an admin of the owning hive
        """
        round_ = await self.store.get_round(round_id)
        if round_ is None:
            raise RoundNotFoundError(round_id)

        session = await self.store.get_session(round_.session_id)
        if session is None:
            raise RoundNotFoundError(round_id)
        await self._require_admin(acting_user_id, session)

        outcome = "already_closed"
        if round_.is_open:
            closed = await self._retry(
                "close_round", lambda: self.store.mark_round_closed(round_id)
            )
            if closed is not None:
                outcome = "won"
                logger.info("round closed", round_id=round_id, closed_by=acting_user_id)
            else:
                outcome = "lost_race"
                logger.info("round close lost race", round_id=round_id)

        result, generated = await self._retry(
            "finalize_round", lambda: self._finalize(round_id, session)
        )
        if generated and outcome == "already_closed":
            # Closed before this call saw it, and no snapshot existed yet
            outcome = "recovered"
            logger.warning("finished resultless closed round", round_id=round_id)

        self.metrics.round_closes.labels(outcome=outcome).inc()
        return result

    async def _finalize(
        self, round_id: str, session: DecisionSession
    ) -> Tuple[DecisionResult, bool]:
        """Write the snapshot unless one exists. Returns (result, generated_here)."""
        async with self.store.lock_result_slot(round_id) as slot:
            if slot.existing is not None:
                return slot.existing, False

            ensure_transition(slot.round.status, ROUND_RESULTS_GENERATED)

            result = await self.aggregator.aggregate(slot.round, session.title, reader=slot)
            stored = await slot.write(result)

        self.metrics.results_generated.inc()
        logger.info(
            "results persisted",
            round_id=round_id,
            round_number=stored.round_number,
            total_voters=stored.total_voters,
        )
        return stored, True

    async def start_new_round(
        self,
        session_id: str,
        acting_user_id: str,
        keep_proposals: bool,
        selected_statements: Optional[List[SelectedStatement]] = None,
        visibility: Optional[str] = None,
        deadline: Optional[datetime] = None,
    ) -> DecisionRound:
        """Open round N+1 once round N has results.

        With keep_proposals the new round votes on the previous round's
        proposal set; otherwise a fresh set is created from
        selected_statements. Every ledger starts empty.

        Raises:
            ConversationNotFoundError, NotDecisionSessionError, ForbiddenError,
            ValidationError (no statements without keep_proposals),
            RoundNotFinalizedError (current round lacks results)
        """
        if not keep_proposals and not selected_statements:
            raise ValidationError(
                "selectedStatements is required when keepProposals is false",
                field="selected_statements",
            )

        session = await self.store.get_session(session_id)
        if session is None:
            raise ConversationNotFoundError(session_id)
        if not session.is_decision_session:
            raise NotDecisionSessionError(session_id)
        await self._require_admin(acting_user_id, session)

        latest = await self.store.get_current_round(session_id)
        ensure_can_open_next(latest)
        if latest is None and keep_proposals:
            raise ValidationError(
                "No previous round to keep proposals from", field="keep_proposals"
            )

        new_round = await self._retry(
            "start_new_round",
            lambda: self.store.open_next_round(
                session_id,
                latest.id if latest else None,
                None if keep_proposals else selected_statements,
                visibility or (latest.visibility if latest else VISIBILITY_HIDDEN),
                deadline,
            ),
        )

        logger.info(
            "round opened",
            session_id=session_id,
            round_id=new_round.id,
            round_number=new_round.round_number,
            keep_proposals=keep_proposals,
            opened_by=acting_user_id,
        )
        return new_round
