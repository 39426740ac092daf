"""Decision Protocols - Type interfaces for dependency injection

The ledger, state machine and orchestrator depend only on these interfaces,
so they run against the asyncpg repositories in production and against an
in-memory store in tests.

Atomicity lives behind two context managers on the store:

    lock_allocation(round_id, user_id)
        Serializes every read-validate-write of one user's allocation in one
        round, and holds the round's status steady while it runs.

    lock_result_slot(round_id)
        Serializes result persistence for one round; whoever enters first
        writes the snapshot, later entrants see it as `existing`. The slot is
        also a RoundReader bound to the locked transaction, so aggregation
        inside it never needs a second connection.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Any, AsyncContextManager, ContextManager, Dict, List, Optional, Protocol, Tuple

from database.models import (
    DecisionResult,
    DecisionRound,
    DecisionSession,
    Proposal,
    SelectedStatement,
    SourceConversation,
    Vote,
)


# -----------------------------------------------------------------------------
# Store
# -----------------------------------------------------------------------------


class VoteAllocation(Protocol):
    round: Optional[DecisionRound]  # As seen while the lock is held
    votes: Dict[str, int]  # proposal_id -> count, zero rows absent

    async def write(self, proposal_id: str, vote_count: int) -> None: ...


class RoundReader(Protocol):
    """The reads aggregation needs"""

    async def get_round_by_number(
        self, session_id: str, round_number: int
    ) -> Optional[DecisionRound]: ...
    async def get_proposals(self, session_id: str, proposal_set: int) -> List[Proposal]: ...
    async def get_round_votes(self, round_id: str) -> List[Vote]: ...
    async def get_result(self, round_id: str) -> Optional[DecisionResult]: ...


class ResultSlot(RoundReader, Protocol):
    round: DecisionRound
    existing: Optional[DecisionResult]

    async def write(self, result: DecisionResult) -> DecisionResult: ...


class DecisionStore(Protocol):
    async def get_session(self, session_id: str) -> Optional[DecisionSession]: ...
    async def get_round(self, round_id: str) -> Optional[DecisionRound]: ...
    async def get_current_round(self, session_id: str) -> Optional[DecisionRound]: ...
    async def get_round_by_number(
        self, session_id: str, round_number: int
    ) -> Optional[DecisionRound]: ...
    async def get_proposal(self, proposal_id: str) -> Optional[Proposal]: ...
    async def get_proposals(self, session_id: str, proposal_set: int) -> List[Proposal]: ...
    async def get_user_votes(self, round_id: str, user_id: str) -> Dict[str, int]: ...
    async def get_round_votes(self, round_id: str) -> List[Vote]: ...
    async def get_result(self, round_id: str) -> Optional[DecisionResult]: ...

    def lock_allocation(self, round_id: str, user_id: str) -> AsyncContextManager[VoteAllocation]: ...
    async def mark_round_closed(self, round_id: str) -> Optional[DecisionRound]: ...
    def lock_result_slot(self, round_id: str) -> AsyncContextManager[ResultSlot]: ...

    async def create_session(
        self,
        hive_id: str,
        created_by: str,
        title: str,
        source_conversation_id: str,
        statements: List[SelectedStatement],
        visibility: str,
        description: Optional[str] = None,
        deadline: Optional[datetime] = None,
    ) -> Tuple[DecisionSession, DecisionRound]: ...

    async def open_next_round(
        self,
        session_id: str,
        previous_round_id: Optional[str],
        statements: Optional[List[SelectedStatement]],
        visibility: str,
        deadline: Optional[datetime] = None,
    ) -> DecisionRound: ...


# -----------------------------------------------------------------------------
# External collaborators
# -----------------------------------------------------------------------------


class MembershipChecker(Protocol):
    async def is_admin(self, user_id: str, hive_id: str) -> bool: ...
    async def is_member(self, user_id: str, hive_id: str) -> bool: ...


class ConversationSource(Protocol):
    async def get_source_conversation(self, conversation_id: str) -> Optional[SourceConversation]: ...


class AnalysisGenerator(Protocol):
    async def generate(self, context: Dict[str, Any]) -> Optional[str]: ...


# -----------------------------------------------------------------------------
# Metrics
# -----------------------------------------------------------------------------


class LabeledCounter(Protocol):
    def labels(self, **kwargs: Any) -> "LabeledCounter": ...
    def inc(self, amount: float = 1) -> None: ...


class LabeledHistogram(Protocol):
    def labels(self, **kwargs: Any) -> "LabeledHistogram": ...
    def observe(self, value: float) -> None: ...
    def time(self) -> ContextManager: ...


class MetricsCollector(Protocol):
    """Metrics the decision core emits

    Used by:
    - decision/ledger.py - vote outcomes
    - decision/rounds.py - close outcomes, results generated
    - decision/retry.py - store retries
    """
    votes_cast: LabeledCounter
    round_closes: LabeledCounter
    results_generated: LabeledCounter
    aggregation_duration: LabeledHistogram
    store_retries: LabeledCounter

    def record_error(self, component: str, error: Exception) -> None: ...


class _NullCounter:
    def labels(self, **kwargs: Any) -> "_NullCounter":
        return self

    def inc(self, amount: float = 1) -> None:
        pass


class _NullHistogram:
    def labels(self, **kwargs: Any) -> "_NullHistogram":
        return self

    def observe(self, value: float) -> None:
        pass

    @contextmanager
    def time(self):
        yield


class NullMetrics:
    """No-op metrics for testing or standalone use"""

    def __init__(self):
        self.votes_cast = _NullCounter()
        self.round_closes = _NullCounter()
        self.results_generated = _NullCounter()
        self.aggregation_duration = _NullHistogram()
        self.store_retries = _NullCounter()

    def record_error(self, component: str, error: Exception) -> None:
        pass
