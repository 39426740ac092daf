"""Decision service - top-level operations over the ledger and round lifecycle

Resolves sessions to rounds, enforces hive membership and admin rights, and
delegates vote mutation to VoteLedger and round transitions to
RoundStateMachine. Route handlers talk only to this class.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from config import get_logger
from database.models import (
    VISIBILITY_AGGREGATE,
    VISIBILITY_HIDDEN,
    VISIBILITY_MODES,
    VISIBILITY_TRANSPARENT,
    DecisionResult,
    DecisionRound,
    DecisionSession,
    Proposal,
    SelectedStatement,
)
from decision.aggregator import ResultsAggregator, tally_votes
from decision.budget import DEFAULT_CREDIT_BUDGET
from decision.ledger import UserVotes, VoteLedger, VoteResult
from decision.protocols import (
    AnalysisGenerator,
    ConversationSource,
    DecisionStore,
    MembershipChecker,
    MetricsCollector,
    NullMetrics,
)
from decision.retry import run_with_retries
from decision.rounds import RoundStateMachine
from exceptions import (
    ConversationNotFoundError,
    DecisionError,
    ForbiddenError,
    NotDecisionSessionError,
    RoundNotFoundError,
    SourceConversationNotFoundError,
    UnauthorizedError,
    ValidationError,
)

logger = get_logger(__name__).bind(component="decision_service")

CONSENSUS_THRESHOLD_MIN = 50
CONSENSUS_THRESHOLD_MAX = 90


@dataclass(frozen=True)
class CreatedSession:
    session_id: str
    round_id: str

    def to_dict(self) -> dict:
        return {"sessionId": self.session_id, "roundId": self.round_id}


@dataclass
class DecisionView:
    """Everything a voter sees for a session's current round"""

    session: DecisionSession
    proposals: List[Proposal]
    current_round: Optional[DecisionRound]
    user_votes: UserVotes
    is_admin: bool
    proposal_totals: Optional[Dict[str, int]] = None
    voter_allocations: Optional[Dict[str, Dict[str, int]]] = None
    result: Optional[DecisionResult] = None
    credit_budget: int = DEFAULT_CREDIT_BUDGET

    def to_dict(self) -> dict:
        proposals = []
        for proposal in self.proposals:
            item = proposal.to_dict()
            item["userVotes"] = self.user_votes.votes.get(proposal.id, 0)
            if self.proposal_totals is not None:
                item["totalVotes"] = self.proposal_totals.get(proposal.id, 0)
            proposals.append(item)

        data = {
            "sessionId": self.session.id,
            "title": self.session.title,
            "description": self.session.description,
            "proposals": proposals,
            "currentRound": self.current_round.to_dict() if self.current_round else None,
            "userVotes": dict(self.user_votes.votes),
            "totalCreditsSpent": self.user_votes.total_credits_spent,
            "remainingCredits": self.user_votes.remaining_credits,
            "creditBudget": self.credit_budget,
            "results": self.result.to_dict() if self.result else None,
            "isAdmin": self.is_admin,
        }
        if self.voter_allocations is not None:
            data["voterAllocations"] = {
                user_id: dict(votes) for user_id, votes in self.voter_allocations.items()
            }
        return data


class DecisionService:
    """Orchestrates decision sessions for the HTTP layer"""

    def __init__(
        self,
        store: DecisionStore,
        membership: MembershipChecker,
        conversations: ConversationSource,
        analyst: Optional[AnalysisGenerator] = None,
        credit_budget: int = DEFAULT_CREDIT_BUDGET,
        max_attempts: int = 3,
        retry_delay: float = 0.05,
        analysis_timeout: float = 45.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.membership = membership
        self.conversations = conversations
        self.credit_budget = credit_budget
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.metrics = metrics or NullMetrics()

        self.ledger = VoteLedger(
            store,
            credit_budget=credit_budget,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
            metrics=self.metrics,
        )
        self.aggregator = ResultsAggregator(
            store,
            analyst=analyst,
            analysis_timeout=analysis_timeout,
            metrics=self.metrics,
        )
        self.rounds = RoundStateMachine(
            store,
            membership,
            self.aggregator,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
            metrics=self.metrics,
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _load_session(self, session_id: str) -> DecisionSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise ConversationNotFoundError(session_id)
        if not session.is_decision_session:
            raise NotDecisionSessionError(session_id)
        return session

    async def _require_member(self, user_id: str, hive_id: str) -> None:
        if not await self.membership.is_member(user_id, hive_id):
            raise UnauthorizedError()

    # -------------------------------------------------------------------------
    # Session creation
    # -------------------------------------------------------------------------

    async def create_decision_session(
        self,
        user_id: str,
        hive_id: str,
        source_conversation_id: str,
        title: str,
        selected_statements: List[SelectedStatement],
        visibility: str = VISIBILITY_HIDDEN,
        consensus_threshold: Optional[int] = None,
        description: Optional[str] = None,
        deadline: Optional[datetime] = None,
    ) -> CreatedSession:
        """Create the session, its proposals and round 1 as one unit.

        Raises:
            ValidationError: Empty statements, blank title, unknown visibility,
                consensus threshold outside 50-90
            ForbiddenError: User is not a hive admin
            SourceConversationNotFoundError: Source missing, in another hive,
                not an understand session, or analysis not ready
        """
        if not selected_statements:
            raise ValidationError(
                "At least one statement is required", field="selected_statements"
            )
        if not title or not title.strip():
            raise ValidationError("Title is required", field="title")
        if visibility not in VISIBILITY_MODES:
            raise ValidationError("Unknown visibility mode", field="visibility", value=visibility)
        if consensus_threshold is not None and not (
            CONSENSUS_THRESHOLD_MIN <= consensus_threshold <= CONSENSUS_THRESHOLD_MAX
        ):
            raise ValidationError(
                "Consensus threshold must be between 50 and 90",
                field="consensus_threshold",
                value=consensus_threshold,
            )

        if not await self.membership.is_admin(user_id, hive_id):
            raise ForbiddenError()

        source = await self.conversations.get_source_conversation(source_conversation_id)
        if source is None:
            raise SourceConversationNotFoundError(source_conversation_id)
        if source.hive_id != hive_id:
            raise SourceConversationNotFoundError(
                source_conversation_id, "Source conversation must be in the same hive"
            )
        if not source.is_analysis_ready:
            raise SourceConversationNotFoundError(
                source_conversation_id,
                "Source must be an understand session with completed analysis",
            )

        session, first_round = await run_with_retries(
            "create_session",
            lambda: self.store.create_session(
                hive_id=hive_id,
                created_by=user_id,
                title=title.strip(),
                source_conversation_id=source_conversation_id,
                statements=selected_statements,
                visibility=visibility,
                description=description,
                deadline=deadline,
            ),
            max_attempts=self.max_attempts,
            base_delay=self.retry_delay,
            metrics=self.metrics,
        )

        logger.info(
            "decision session created",
            session_id=session.id,
            round_id=first_round.id,
            hive_id=hive_id,
            proposals=len(selected_statements),
            visibility=visibility,
            consensus_threshold=consensus_threshold,
        )
        return CreatedSession(session_id=session.id, round_id=first_round.id)

    # -------------------------------------------------------------------------
    # Voting
    # -------------------------------------------------------------------------

    async def get_user_votes(self, session_id: str, user_id: str) -> UserVotes:
        """The caller's allocation in the session's current round"""
        session = await self._load_session(session_id)
        await self._require_member(user_id, session.hive_id)

        current = await self.store.get_current_round(session_id)
        return await self.ledger.get_user_votes(current.id if current else None, user_id)

    async def cast_vote(
        self, session_id: str, user_id: str, proposal_id: str, delta: int
    ) -> VoteResult:
        """Cast a vote delta in the session's current round.

        Expected failures are returned as a failed VoteResult; only a
        malformed delta raises (ValidationError).
        """
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("Vote delta must be an integer", field="delta", value=delta)

        try:
            session = await self._load_session(session_id)
            await self._require_member(user_id, session.hive_id)
            current = await self.store.get_current_round(session_id)
            if current is None:
                raise RoundNotFoundError(message="Session has no voting round")
        except DecisionError as e:
            self.metrics.votes_cast.labels(outcome=e.code).inc()
            return VoteResult.failed(e)

        return await self.ledger.cast_vote(current.id, user_id, proposal_id, delta)

    # -------------------------------------------------------------------------
    # Round lifecycle
    # -------------------------------------------------------------------------

    async def close_round(self, round_id: str, user_id: str) -> DecisionResult:
        return await self.rounds.close_round(round_id, user_id)

    async def start_new_round(
        self,
        session_id: str,
        user_id: str,
        keep_proposals: bool,
        selected_statements: Optional[List[SelectedStatement]] = None,
        visibility: Optional[str] = None,
        deadline: Optional[datetime] = None,
    ) -> DecisionRound:
        if visibility is not None and visibility not in VISIBILITY_MODES:
            raise ValidationError("Unknown visibility mode", field="visibility", value=visibility)
        return await self.rounds.start_new_round(
            session_id,
            user_id,
            keep_proposals,
            selected_statements=selected_statements,
            visibility=visibility,
            deadline=deadline,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_decision_view(self, session_id: str, user_id: str) -> DecisionView:
        """Current round, its proposals, the caller's allocation and what the
        round's visibility mode reveals about everyone else's."""
        session = await self._load_session(session_id)
        await self._require_member(user_id, session.hive_id)
        is_admin = await self.membership.is_admin(user_id, session.hive_id)

        current = await self.store.get_current_round(session_id)
        user_votes = await self.ledger.get_user_votes(current.id if current else None, user_id)

        view = DecisionView(
            session=session,
            proposals=[],
            current_round=current,
            user_votes=user_votes,
            is_admin=is_admin,
            credit_budget=self.credit_budget,
        )
        if current is None:
            return view

        proposals = await self.store.get_proposals(session_id, current.proposal_set)
        view.proposals = sorted(proposals, key=lambda p: (p.display_order, p.id))

        if current.visibility in (VISIBILITY_AGGREGATE, VISIBILITY_TRANSPARENT):
            votes = await self.store.get_round_votes(current.id)
            view.proposal_totals = tally_votes(votes)
            if current.visibility == VISIBILITY_TRANSPARENT:
                allocations: Dict[str, Dict[str, int]] = {}
                for vote in votes:
                    if vote.votes > 0:
                        allocations.setdefault(vote.user_id, {})[vote.proposal_id] = vote.votes
                view.voter_allocations = allocations

        if not current.is_open:
            view.result = await self.store.get_result(current.id)

        return view

    async def get_round_result(self, round_id: str, user_id: str) -> DecisionResult:
        """Stored snapshot for a round (members only)"""
        round_ = await self.store.get_round(round_id)
        if round_ is None:
            raise RoundNotFoundError(round_id)
        session = await self.store.get_session(round_.session_id)
        if session is None:
            raise RoundNotFoundError(round_id)
        await self._require_member(user_id, session.hive_id)

        result = await self.store.get_result(round_id)
        if result is None:
            raise RoundNotFoundError(round_id, message="Results not available for this round")
        return result
