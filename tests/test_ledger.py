"""
Tests for the vote ledger

Runs VoteLedger against the in-memory store. Concurrency tests fire casts
with asyncio.gather; the store yields between read and write, so a ledger
that validated outside the allocation lock would overspend.
"""

import asyncio

import pytest

from database.models import ROUND_RESULTS_GENERATED, ROUND_VOTING_CLOSED
from decision.ledger import VoteLedger, VoteResult
from exceptions import TransactionConflictError, ValidationError
from fakes import InMemoryDecisionStore, RecordingMetrics


def _setup(proposal_count: int = 6):
    store = InMemoryDecisionStore()
    session = store.add_session()
    round_ = store.add_round(session.id)
    proposals = [
        store.add_proposal(session.id, f"Proposal {i}", i) for i in range(proposal_count)
    ]
    return store, round_, proposals


class TestCastVote:
    """Single-caller behavior"""

    def test_budget_walk_to_exactly_zero(self):
        store, round_, proposals = _setup(1)
        ledger = VoteLedger(store)
        pid = proposals[0].id

        async def run():
            results = []
            for _ in range(11):
                results.append(await ledger.cast_vote(round_.id, "u1", pid, 1))
            return results

        results = asyncio.run(run())

        assert all(r.success for r in results[:10])
        assert results[8].remaining_credits == 19
        assert results[9].new_votes == 10
        assert results[9].remaining_credits == 0

        assert results[10].success is False
        assert results[10].error_code == "BUDGET_EXCEEDED"
        assert results[10].remaining_credits == 0
        assert store.votes[(round_.id, "u1", pid)] == 10

    def test_negative_leaves_ledger_unchanged(self):
        store, round_, proposals = _setup(1)
        ledger = VoteLedger(store)

        result = asyncio.run(ledger.cast_vote(round_.id, "u1", proposals[0].id, -1))

        assert result.success is False
        assert result.error_code == "NEGATIVE_VOTES"
        assert store.votes == {}
        assert store.vote_writes == 0

    def test_decrement_to_zero_removes_row(self):
        store, round_, proposals = _setup(1)
        ledger = VoteLedger(store)
        pid = proposals[0].id

        async def run():
            await ledger.cast_vote(round_.id, "u1", pid, 1)
            return await ledger.cast_vote(round_.id, "u1", pid, -1)

        result = asyncio.run(run())

        assert result.success is True
        assert result.new_votes == 0
        assert result.remaining_credits == 100
        assert (round_.id, "u1", pid) not in store.votes

    def test_unknown_round(self):
        store, _, proposals = _setup(1)
        result = asyncio.run(VoteLedger(store).cast_vote("round-missing", "u1", proposals[0].id, 1))
        assert result.error_code == "ROUND_NOT_FOUND"

    def test_unknown_proposal(self):
        store, round_, _ = _setup(1)
        result = asyncio.run(VoteLedger(store).cast_vote(round_.id, "u1", "proposal-missing", 1))
        assert result.error_code == "RESPONSE_NOT_FOUND"

    def test_proposal_from_other_session(self):
        store, round_, _ = _setup(1)
        other = store.add_session()
        foreign = store.add_proposal(other.id, "Elsewhere", 0)

        result = asyncio.run(VoteLedger(store).cast_vote(round_.id, "u1", foreign.id, 1))
        assert result.error_code == "NOT_A_PROPOSAL"

    def test_proposal_from_retired_set(self):
        store, round_, _ = _setup(1)
        old = store.add_proposal(round_.session_id, "Old set", 0, proposal_set=0)

        result = asyncio.run(VoteLedger(store).cast_vote(round_.id, "u1", old.id, 1))
        assert result.error_code == "NOT_A_PROPOSAL"

    @pytest.mark.parametrize("status", [ROUND_VOTING_CLOSED, ROUND_RESULTS_GENERATED])
    def test_closed_round_rejects_votes(self, status):
        store, round_, proposals = _setup(1)
        store.rounds[round_.id].status = status

        result = asyncio.run(VoteLedger(store).cast_vote(round_.id, "u1", proposals[0].id, 1))
        assert result.error_code == "ROUND_NOT_OPEN"
        assert store.vote_writes == 0

    def test_bool_delta_raises(self):
        store, round_, proposals = _setup(1)
        with pytest.raises(ValidationError):
            asyncio.run(VoteLedger(store).cast_vote(round_.id, "u1", proposals[0].id, True))

    def test_metrics_record_outcomes(self):
        store, round_, proposals = _setup(1)
        metrics = RecordingMetrics()
        ledger = VoteLedger(store, metrics=metrics)

        async def run():
            await ledger.cast_vote(round_.id, "u1", proposals[0].id, 1)
            await ledger.cast_vote(round_.id, "u1", proposals[0].id, -2)

        asyncio.run(run())
        assert metrics.votes_cast.value("OK") == 1
        assert metrics.votes_cast.value("NEGATIVE_VOTES") == 1


class TestUserVotes:
    def test_allocation_and_credits(self):
        store, round_, proposals = _setup(2)
        store.set_votes(round_.id, "u1", proposals[0].id, 3)
        store.set_votes(round_.id, "u1", proposals[1].id, 2)
        store.set_votes(round_.id, "u2", proposals[1].id, 5)

        votes = asyncio.run(VoteLedger(store).get_user_votes(round_.id, "u1"))

        assert votes.votes == {proposals[0].id: 3, proposals[1].id: 2}
        assert votes.total_credits_spent == 13
        assert votes.remaining_credits == 87
        assert votes.to_dict()["remainingCredits"] == 87

    def test_no_round_reads_full_budget(self):
        store = InMemoryDecisionStore()
        votes = asyncio.run(VoteLedger(store, credit_budget=50).get_user_votes(None, "u1"))
        assert votes.votes == {}
        assert votes.remaining_credits == 50

    def test_rounds_are_isolated(self):
        """Spend in round 1 does not reduce round 2's budget"""
        store, round_, proposals = _setup(1)
        store.set_votes(round_.id, "u1", proposals[0].id, 10)
        store.rounds[round_.id].status = ROUND_RESULTS_GENERATED
        second = store.add_round(round_.session_id, round_number=2)

        async def run():
            result = await VoteLedger(store).cast_vote(second.id, "u1", proposals[0].id, 1)
            first = await VoteLedger(store).get_user_votes(round_.id, "u1")
            return result, first

        result, first = asyncio.run(run())
        assert result.success is True
        assert result.remaining_credits == 99
        assert first.votes == {proposals[0].id: 10}


class TestConcurrentCasts:
    """Same-user casts serialize on the allocation lock"""

    def test_two_concurrent_increments_both_succeed(self):
        store, round_, proposals = _setup(2)
        ledger = VoteLedger(store)

        async def run():
            return await asyncio.gather(
                ledger.cast_vote(round_.id, "u1", proposals[0].id, 1),
                ledger.cast_vote(round_.id, "u1", proposals[1].id, 1),
            )

        results = asyncio.run(run())
        assert all(r.success for r in results)
        assert sorted(r.remaining_credits for r in results) == [98, 99]

    def test_concurrent_casts_never_overspend(self):
        """97 spent: three +1s on fresh proposals fit, the fourth does not"""
        store, round_, proposals = _setup(6)
        store.set_votes(round_.id, "u1", proposals[0].id, 9)
        store.set_votes(round_.id, "u1", proposals[1].id, 4)
        ledger = VoteLedger(store)

        async def run():
            return await asyncio.gather(
                *(ledger.cast_vote(round_.id, "u1", p.id, 1) for p in proposals[2:])
            )

        results = asyncio.run(run())
        succeeded = [r for r in results if r.success]
        failed = [r for r in results if not r.success]

        assert len(succeeded) == 3
        assert len(failed) == 1
        assert failed[0].error_code == "BUDGET_EXCEEDED"

        final = asyncio.run(ledger.get_user_votes(round_.id, "u1"))
        assert final.total_credits_spent == 100
        assert final.remaining_credits == 0

    def test_many_increments_on_one_proposal(self):
        store, round_, proposals = _setup(1)
        ledger = VoteLedger(store)

        async def run():
            return await asyncio.gather(
                *(ledger.cast_vote(round_.id, "u1", proposals[0].id, 1) for _ in range(15))
            )

        results = asyncio.run(run())
        assert sum(1 for r in results if r.success) == 10
        assert store.votes[(round_.id, "u1", proposals[0].id)] == 10

    def test_different_users_do_not_interfere(self):
        store, round_, proposals = _setup(1)
        ledger = VoteLedger(store)
        users = [f"u{i}" for i in range(5)]

        async def run():
            return await asyncio.gather(
                *(ledger.cast_vote(round_.id, u, proposals[0].id, 1) for u in users)
            )

        results = asyncio.run(run())
        assert all(r.success and r.remaining_credits == 99 for r in results)


class TestTransientConflicts:
    """Serialization conflicts re-run the whole unit"""

    def test_conflict_is_retried(self):
        store, round_, proposals = _setup(1)
        store.conflicts_to_raise = 2
        metrics = RecordingMetrics()
        ledger = VoteLedger(store, max_attempts=3, retry_delay=0, metrics=metrics)

        result = asyncio.run(ledger.cast_vote(round_.id, "u1", proposals[0].id, 1))

        assert result.success is True
        assert result.new_votes == 1
        assert metrics.store_retries.value("cast_vote") == 2

    def test_conflict_exhausts_attempts(self):
        store, round_, proposals = _setup(1)
        store.conflicts_to_raise = 5
        ledger = VoteLedger(store, max_attempts=2, retry_delay=0)

        with pytest.raises(TransactionConflictError):
            asyncio.run(ledger.cast_vote(round_.id, "u1", proposals[0].id, 1))
        assert store.votes == {}


class TestVoteResult:
    def test_failed_payload_includes_remaining_for_budget(self):
        from exceptions import BudgetExceededError

        result = VoteResult.failed(BudgetExceededError(cost_after=121, credit_budget=100, remaining_credits=0))
        assert result.to_dict() == {
            "success": False,
            "errorCode": "BUDGET_EXCEEDED",
            "message": "Insufficient credits",
            "remainingCredits": 0,
        }
