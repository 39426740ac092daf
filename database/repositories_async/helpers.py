"""Repository helper functions for object construction from asyncpg rows.

Rows come back as asyncpg.Record; JSONB columns arrive already decoded
(codec registered in db_postgres.py) but older rows may hold a JSON string.
Everything is normalized into the typed models before leaving the repository.
"""

import json
from typing import Any, Dict, List

from database.models import (
    DecisionResult,
    DecisionRound,
    DecisionSession,
    Proposal,
    ProposalRanking,
    SourceConversation,
    Vote,
)


def deserialize_rankings(data: Any) -> List[ProposalRanking]:
    """Deserialize JSONB proposal_rankings (camelCase or snake_case keys)."""
    if not data:
        return []
    if isinstance(data, str):
        data = json.loads(data)
    return [ProposalRanking.model_validate(r) for r in data]


def serialize_rankings(rankings: List[ProposalRanking]) -> List[Dict[str, Any]]:
    """Rankings as stored in JSONB - camelCase, matching the API payload."""
    return [r.model_dump(mode="json", by_alias=True) for r in rankings]


def build_session(row: Any) -> DecisionSession:
    return DecisionSession(
        id=row["id"],
        hive_id=row["hive_id"],
        title=row["title"],
        type=row["type"],
        description=row["description"],
        source_conversation_id=row["source_conversation_id"],
        created_by=row["created_by"],
        created_at=row["created_at"],
    )


def build_source_conversation(row: Any) -> SourceConversation:
    return SourceConversation(
        id=row["id"],
        hive_id=row["hive_id"],
        type=row["type"],
        analysis_status=row["analysis_status"],
        title=row["title"],
    )


def build_proposal(row: Any) -> Proposal:
    agree = row["original_agree_percent"]
    return Proposal(
        id=row["id"],
        session_id=row["conversation_id"],
        statement_text=row["statement_text"],
        display_order=row["display_order"],
        proposal_set=row["proposal_set"],
        source_bucket_id=row["source_bucket_id"],
        source_cluster_index=row["source_cluster_index"],
        original_agree_percent=float(agree) if agree is not None else None,
        created_at=row["created_at"],
    )


def build_round(row: Any) -> DecisionRound:
    return DecisionRound(
        id=row["id"],
        session_id=row["conversation_id"],
        round_number=row["round_number"],
        status=row["status"],
        visibility=row["visibility"],
        proposal_set=row["proposal_set"],
        deadline=row["deadline"],
        opened_at=row["opened_at"],
        closed_at=row["closed_at"],
    )


def build_vote(row: Any) -> Vote:
    return Vote(
        round_id=row["round_id"],
        user_id=row["user_id"],
        proposal_id=row["proposal_id"],
        votes=row["votes"],
        updated_at=row["updated_at"],
    )


def build_result(row: Any) -> DecisionResult:
    """Construct DecisionResult from a decision_results row joined with its round number."""
    return DecisionResult(
        round_id=row["round_id"],
        round_number=row["round_number"],
        proposal_rankings=deserialize_rankings(row["proposal_rankings"]),
        total_voters=row["total_voters"],
        ai_analysis=row["ai_analysis"],
        generated_at=row["generated_at"],
    )
