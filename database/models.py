"""
Database Models for hivemind decision sessions

Pydantic dataclasses with runtime validation for core entities, plus
BaseModel types for the JSONB ranking snapshot. Rows coming out of asyncpg
are normalized into these types at the repository boundary
(see database/repositories_async/helpers.py).
"""

from dataclasses import asdict
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic.dataclasses import dataclass


# Round lifecycle: voting_open -> voting_closed -> results_generated
ROUND_VOTING_OPEN = "voting_open"
ROUND_VOTING_CLOSED = "voting_closed"
ROUND_RESULTS_GENERATED = "results_generated"
ROUND_STATUSES = (ROUND_VOTING_OPEN, ROUND_VOTING_CLOSED, ROUND_RESULTS_GENERATED)

# What voters may see while a round is open (never affects voting math)
VISIBILITY_HIDDEN = "hidden"
VISIBILITY_AGGREGATE = "aggregate"
VISIBILITY_TRANSPARENT = "transparent"
VISIBILITY_MODES = (VISIBILITY_HIDDEN, VISIBILITY_AGGREGATE, VISIBILITY_TRANSPARENT)

# conversations.type values this core cares about
SESSION_TYPE_DECIDE = "decide"
SESSION_TYPE_UNDERSTAND = "understand"
ANALYSIS_STATUS_READY = "ready"

RoundStatus = Literal["voting_open", "voting_closed", "results_generated"]
Visibility = Literal["hidden", "aggregate", "transparent"]


# --- JSONB / input Pydantic Models ---


class SelectedStatement(BaseModel):
    """A theme statement picked from an understand session to become a proposal"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    bucket_id: Optional[str] = None
    cluster_index: int = Field(default=0, ge=0)
    statement_text: str = Field(min_length=1, max_length=2000)
    agree_percent: Optional[float] = Field(default=None, ge=0, le=100)


class ProposalRanking(BaseModel):
    """One entry of a round's ranked result.

    change_from_previous is previous_rank - rank (positive = moved up), None
    for round 1 or for proposals absent from the previous ranking.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    proposal_id: str
    statement_text: str
    total_votes: int
    vote_percent: int  # whole percent of all votes in the round
    rank: int
    change_from_previous: Optional[int] = None


class DecisionResult(BaseModel):
    """Immutable snapshot written exactly once per round close"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    round_id: str
    round_number: int
    proposal_rankings: List[ProposalRanking]
    total_voters: int = 0
    ai_analysis: Optional[str] = None
    generated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Camel-cased payload for API responses"""
        return self.model_dump(mode="json", by_alias=True)


# --- Domain Dataclasses (with runtime validation) ---


@dataclass
class DecisionSession:
    """A `decide` conversation owning proposals and rounds"""

    id: str
    hive_id: str
    title: str
    type: str = SESSION_TYPE_DECIDE
    description: Optional[str] = None
    source_conversation_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_decision_session(self) -> bool:
        return self.type == SESSION_TYPE_DECIDE


@dataclass(frozen=True)
class SourceConversation:
    """Understand session read from the conversation service (never mutated here)"""

    id: str
    hive_id: str
    type: str
    analysis_status: Optional[str] = None
    title: Optional[str] = None

    @property
    def is_analysis_ready(self) -> bool:
        return self.type == SESSION_TYPE_UNDERSTAND and self.analysis_status == ANALYSIS_STATUS_READY


@dataclass(frozen=True)
class Proposal:
    """A statement under vote. Immutable once created."""

    id: str
    session_id: str
    statement_text: str
    display_order: int
    proposal_set: int = 1  # Generation; rounds vote on exactly one set
    source_bucket_id: Optional[str] = None  # Provenance only
    source_cluster_index: Optional[int] = None
    original_agree_percent: Optional[float] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "statementText": self.statement_text,
            "displayOrder": self.display_order,
            "sourceClusterIndex": self.source_cluster_index,
            "originalAgreePercent": self.original_agree_percent,
        }


@dataclass
class DecisionRound:
    """One voting cycle within a session"""

    id: str
    session_id: str
    round_number: int
    status: RoundStatus = ROUND_VOTING_OPEN
    visibility: Visibility = VISIBILITY_HIDDEN
    proposal_set: int = 1
    deadline: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == ROUND_VOTING_OPEN

    @property
    def is_finalized(self) -> bool:
        return self.status == ROUND_RESULTS_GENERATED

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        data = asdict(self)
        for key in ("deadline", "opened_at", "closed_at"):
            if data[key]:
                data[key] = data[key].isoformat()
        return {
            "id": data["id"],
            "roundNumber": data["round_number"],
            "status": data["status"],
            "visibility": data["visibility"],
            "deadline": data["deadline"],
            "openedAt": data["opened_at"],
            "closedAt": data["closed_at"],
        }


@dataclass
class Vote:
    """Ledger entry: (round, user, proposal) -> non-negative vote count"""

    round_id: str
    user_id: str
    proposal_id: str
    votes: int = Field(ge=0)
    updated_at: Optional[datetime] = None
