"""Decision API - quadratic voting on proposals derived from understand sessions

Endpoints:
- Create a decision session (proposals + round 1)
- View the current round, cast votes, read the caller's allocation
- Close a round (idempotent) and read its result snapshot
- Start the next round, keeping or replacing the proposal set

Domain failures raise HivemindError subclasses; the app-level exception
handler renders them as {"success": false, "error": {code, message}}.
"""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from config import get_logger
from decision.service import DecisionService
from server.dependencies import get_current_user_id, get_decision_service
from server.models.requests import (
    CastVoteRequest,
    CreateDecisionSessionRequest,
    StartNewRoundRequest,
)
from server.utils.responses import error_response, status_for_code, success_response

logger = get_logger(__name__).bind(component="decision_api")

sessions_router = APIRouter(prefix="/api/v1/decision-sessions", tags=["decisions"])
rounds_router = APIRouter(prefix="/api/v1/decision-rounds", tags=["decisions"])


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------


@sessions_router.post("", status_code=status.HTTP_201_CREATED)
async def create_decision_session(
    body: CreateDecisionSessionRequest,
    user_id: str = Depends(get_current_user_id),
    service: DecisionService = Depends(get_decision_service),
):
    """Create a decision session from selected understand-session statements.

    Requires hive admin. Proposals keep the order of selectedStatements.
    """
    created = await service.create_decision_session(
        user_id=user_id,
        hive_id=body.hive_id,
        source_conversation_id=body.source_conversation_id,
        title=body.title,
        selected_statements=body.selected_statements,
        visibility=body.visibility,
        consensus_threshold=body.consensus_threshold,
        description=body.description,
        deadline=body.deadline,
    )
    return success_response(created.to_dict())


@sessions_router.get("/{session_id}")
async def get_decision_view(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    service: DecisionService = Depends(get_decision_service),
):
    """Current round, proposals and the caller's allocation"""
    view = await service.get_decision_view(session_id, user_id)
    return success_response(view.to_dict())


@sessions_router.get("/{session_id}/votes")
async def get_user_votes(
    session_id: str,
    user_id: str = Depends(get_current_user_id),
    service: DecisionService = Depends(get_decision_service),
):
    votes = await service.get_user_votes(session_id, user_id)
    return success_response(votes.to_dict())


@sessions_router.post("/{session_id}/votes")
async def cast_vote(
    session_id: str,
    body: CastVoteRequest,
    user_id: str = Depends(get_current_user_id),
    service: DecisionService = Depends(get_decision_service),
):
    """Add or remove one vote on a proposal in the current round"""
    result = await service.cast_vote(session_id, user_id, body.proposal_id, body.delta)

    if not result.success:
        extras = {}
        if result.remaining_credits is not None:
            extras["remainingCredits"] = result.remaining_credits
        return JSONResponse(
            status_code=status_for_code(result.error_code),
            content=error_response(result.error_code, result.message, **extras),
        )

    return success_response(
        {"newVotes": result.new_votes, "remainingCredits": result.remaining_credits}
    )


@sessions_router.post("/{session_id}/rounds", status_code=status.HTTP_201_CREATED)
async def start_new_round(
    session_id: str,
    body: StartNewRoundRequest,
    user_id: str = Depends(get_current_user_id),
    service: DecisionService = Depends(get_decision_service),
):
    """Open the next round once the current one has results (hive admin)"""
    new_round = await service.start_new_round(
        session_id,
        user_id,
        keep_proposals=body.keep_proposals,
        selected_statements=body.selected_statements,
        visibility=body.visibility,
        deadline=body.deadline,
    )
    return success_response({"roundId": new_round.id, "round": new_round.to_dict()})


# -----------------------------------------------------------------------------
# Rounds
# -----------------------------------------------------------------------------


@rounds_router.post("/{round_id}/close")
async def close_round(
    round_id: str,
    user_id: str = Depends(get_current_user_id),
    service: DecisionService = Depends(get_decision_service),
):
    """Close a round and return its result snapshot.

    Safe to retry: repeated calls return the same snapshot.
    """
    result = await service.close_round(round_id, user_id)
    return success_response({"result": result.to_dict()})


@rounds_router.get("/{round_id}/result")
async def get_round_result(
    round_id: str,
    user_id: str = Depends(get_current_user_id),
    service: DecisionService = Depends(get_decision_service),
):
    result = await service.get_round_result(round_id, user_id)
    return success_response({"result": result.to_dict()})
