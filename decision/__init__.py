"""Quadratic-voting ledger and decision-round lifecycle"""

from decision.budget import DEFAULT_CREDIT_BUDGET, check_delta, quadratic_cost
from decision.ledger import UserVotes, VoteLedger, VoteResult
from decision.aggregator import ResultsAggregator, rank_proposals
from decision.rounds import RoundStateMachine
from decision.service import CreatedSession, DecisionService, DecisionView

__all__ = [
    "DEFAULT_CREDIT_BUDGET",
    "check_delta",
    "quadratic_cost",
    "UserVotes",
    "VoteLedger",
    "VoteResult",
    "ResultsAggregator",
    "rank_proposals",
    "RoundStateMachine",
    "CreatedSession",
    "DecisionService",
    "DecisionView",
]
