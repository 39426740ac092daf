"""Results aggregator - tally, rank and snapshot a closed round

`rank_proposals` is the pure ranking step. `ResultsAggregator.aggregate`
gathers its inputs from the store (proposal set, vote rows, the previous
round's snapshot), asks the optional analyst for a narrative, and returns an
unsaved DecisionResult. Persisting it is the round state machine's job.
"""

import asyncio
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from config import get_logger
from database.models import DecisionResult, DecisionRound, Proposal, ProposalRanking, Vote
from decision.protocols import (
    AnalysisGenerator,
    DecisionStore,
    MetricsCollector,
    NullMetrics,
    RoundReader,
)
from exceptions import LLMError

logger = get_logger(__name__).bind(component="results_aggregator")

NO_VOTING_DATA_ANALYSIS = "No voting data available for analysis."


def tally_votes(votes: Iterable[Vote]) -> Dict[str, int]:
    """Sum vote counts per proposal"""
    totals: Dict[str, int] = {}
    for vote in votes:
        totals[vote.proposal_id] = totals.get(vote.proposal_id, 0) + vote.votes
    return totals


def count_voters(votes: Iterable[Vote]) -> int:
    """Distinct users holding at least one non-zero allocation"""
    return len({vote.user_id for vote in votes if vote.votes > 0})


def vote_percent(total: int, grand_total: int) -> int:
    """Share of all votes as a whole percent, halves rounded up (0 when nobody voted)"""
    if grand_total <= 0:
        return 0
    return math.floor(100 * total / grand_total + 0.5)


def rank_proposals(
    proposals: List[Proposal],
    totals: Mapping[str, int],
    previous_rankings: Optional[List[ProposalRanking]] = None,
) -> List[ProposalRanking]:
    """Rank every proposal of the round, zero-vote proposals included.

    Order is total votes descending, then display_order ascending, then id,
    so the same ledger always yields the same ranking.

    Args:
        proposals: The round's proposal set
        totals: proposal_id -> summed votes (missing means 0)
        previous_rankings: The previous round's snapshot, if any

    Returns:
        Rankings with 1-based rank and change_from_previous filled in
    """
    grand_total = sum(totals.get(p.id, 0) for p in proposals)

    ordered = sorted(
        proposals,
        key=lambda p: (-totals.get(p.id, 0), p.display_order, p.id),
    )

    previous_ranks: Dict[str, int] = {}
    if previous_rankings:
        previous_ranks = {r.proposal_id: r.rank for r in previous_rankings}

    rankings = []
    for index, proposal in enumerate(ordered):
        rank = index + 1
        total = totals.get(proposal.id, 0)
        previous_rank = previous_ranks.get(proposal.id)
        rankings.append(
            ProposalRanking(
                proposal_id=proposal.id,
                statement_text=proposal.statement_text,
                total_votes=total,
                vote_percent=vote_percent(total, grand_total),
                rank=rank,
                change_from_previous=(
                    previous_rank - rank if previous_rank is not None else None
                ),
            )
        )
    return rankings


class ResultsAggregator:
    """Builds the DecisionResult for one round"""

    def __init__(
        self,
        store: DecisionStore,
        analyst: Optional[AnalysisGenerator] = None,
        analysis_timeout: float = 45.0,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.analyst = analyst
        self.analysis_timeout = analysis_timeout
        self.metrics = metrics or NullMetrics()

    async def aggregate(
        self,
        round_: DecisionRound,
        session_title: Optional[str] = None,
        reader: Optional[RoundReader] = None,
    ) -> DecisionResult:
        """Tally the round's ledger and build its snapshot (not persisted).

        `reader` defaults to the store; the state machine passes the locked
        result slot so every read shares its transaction.
        """
        start_time = time.time()
        reader = reader or self.store

        proposals = await reader.get_proposals(round_.session_id, round_.proposal_set)
        votes = await reader.get_round_votes(round_.id)

        previous_rankings = None
        if round_.round_number > 1:
            previous_round = await reader.get_round_by_number(
                round_.session_id, round_.round_number - 1
            )
            if previous_round:
                previous_result = await reader.get_result(previous_round.id)
                if previous_result:
                    previous_rankings = previous_result.proposal_rankings

        rankings = rank_proposals(proposals, tally_votes(votes), previous_rankings)
        total_voters = count_voters(votes)

        ai_analysis = await self._analyze(
            {
                "session_title": session_title or "Decision Session",
                "round_number": round_.round_number,
                "total_voters": total_voters,
                "rankings": rankings,
                "previous_rankings": previous_rankings,
                "source_consensus": [
                    {
                        "statement_text": p.statement_text,
                        "agree_percent": p.original_agree_percent or 0,
                    }
                    for p in sorted(proposals, key=lambda p: p.display_order)
                ],
            }
        )

        duration = time.time() - start_time
        self.metrics.aggregation_duration.observe(duration)
        logger.info(
            "round aggregated",
            round_id=round_.id,
            round_number=round_.round_number,
            proposals=len(rankings),
            total_voters=total_voters,
            has_analysis=ai_analysis is not None,
            duration_seconds=round(duration, 3),
        )

        return DecisionResult(
            round_id=round_.id,
            round_number=round_.round_number,
            proposal_rankings=rankings,
            total_voters=total_voters,
            ai_analysis=ai_analysis,
            generated_at=datetime.now(timezone.utc),
        )

    async def _analyze(self, context: Dict[str, Any]) -> Optional[str]:
        """Narrative for the snapshot; never blocks or fails the close"""
        if not context["rankings"]:
            return NO_VOTING_DATA_ANALYSIS
        if self.analyst is None:
            return None

        try:
            return await asyncio.wait_for(
                self.analyst.generate(context), timeout=self.analysis_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("decision analysis timed out", timeout_seconds=self.analysis_timeout)
            return None
        except LLMError as e:
            self.metrics.record_error(component="decision_analysis", error=e)
            logger.warning("decision analysis failed", error=str(e), model=e.model)
            return None
