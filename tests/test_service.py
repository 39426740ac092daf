"""
Tests for DecisionService

Session creation rules, membership gates, visibility of other voters'
allocations, and result reads.
"""

import asyncio

import pytest

from database.models import (
    ROUND_RESULTS_GENERATED,
    SESSION_TYPE_UNDERSTAND,
    SelectedStatement,
    SourceConversation,
)
from decision.service import DecisionService
from exceptions import (
    ConversationNotFoundError,
    ForbiddenError,
    NotDecisionSessionError,
    RoundNotFoundError,
    SourceConversationNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from fakes import InMemoryDecisionStore, StaticConversations, StaticMembership

STATEMENTS = [
    SelectedStatement(statement_text="Fix the roads", cluster_index=0, agree_percent=82.5, bucket_id="b-1"),
    SelectedStatement(statement_text="Fund the library", cluster_index=1, agree_percent=64.0),
    SelectedStatement(statement_text="Plant trees", cluster_index=2),
]


def _service(conversations=None):
    store = InMemoryDecisionStore()
    membership = StaticMembership(
        admins={"hive-1": {"admin"}, "hive-2": {"other-admin"}},
        members={"hive-1": {"u1", "u2"}},
    )
    conversations = conversations or StaticConversations(
        SourceConversation(id="conv-1", hive_id="hive-1", type=SESSION_TYPE_UNDERSTAND, analysis_status="ready"),
        SourceConversation(id="conv-pending", hive_id="hive-1", type=SESSION_TYPE_UNDERSTAND, analysis_status="processing"),
        SourceConversation(id="conv-decide", hive_id="hive-1", type="decide", analysis_status="ready"),
        SourceConversation(id="conv-2", hive_id="hive-2", type=SESSION_TYPE_UNDERSTAND, analysis_status="ready"),
    )
    service = DecisionService(store, membership, conversations, retry_delay=0)
    return service, store


def _create(service, **overrides):
    kwargs = dict(
        user_id="admin",
        hive_id="hive-1",
        source_conversation_id="conv-1",
        title="Where should the budget go?",
        selected_statements=STATEMENTS,
    )
    kwargs.update(overrides)
    return asyncio.run(service.create_decision_session(**kwargs))


class TestCreateDecisionSession:
    def test_creates_session_proposals_and_first_round(self):
        service, store = _service()

        created = _create(service, visibility="aggregate", consensus_threshold=70)

        session = store.sessions[created.session_id]
        assert session.type == "decide"
        assert session.source_conversation_id == "conv-1"
        assert session.created_by == "admin"

        round_ = store.rounds[created.round_id]
        assert round_.round_number == 1
        assert round_.status == "voting_open"
        assert round_.visibility == "aggregate"

        proposals = asyncio.run(store.get_proposals(created.session_id, 1))
        assert [p.statement_text for p in proposals] == [s.statement_text for s in STATEMENTS]
        assert [p.display_order for p in proposals] == [0, 1, 2]
        assert proposals[0].original_agree_percent == 82.5
        assert proposals[0].source_bucket_id == "b-1"
        assert created.to_dict() == {"sessionId": created.session_id, "roundId": created.round_id}

    def test_title_is_trimmed(self):
        service, store = _service()
        created = _create(service, title="  Parks  ")
        assert store.sessions[created.session_id].title == "Parks"

    def test_empty_statements_rejected(self):
        service, store = _service()
        with pytest.raises(ValidationError):
            _create(service, selected_statements=[])
        assert store.sessions == {}

    def test_blank_title_rejected(self):
        service, _ = _service()
        with pytest.raises(ValidationError):
            _create(service, title="   ")

    def test_unknown_visibility_rejected(self):
        service, _ = _service()
        with pytest.raises(ValidationError):
            _create(service, visibility="public")

    @pytest.mark.parametrize("threshold", [49, 91])
    def test_threshold_out_of_range(self, threshold):
        service, _ = _service()
        with pytest.raises(ValidationError):
            _create(service, consensus_threshold=threshold)

    def test_member_cannot_create(self):
        service, store = _service()
        with pytest.raises(ForbiddenError):
            _create(service, user_id="u1")
        assert store.sessions == {}

    @pytest.mark.parametrize(
        "source_id",
        ["conv-missing", "conv-pending", "conv-decide", "conv-2"],
    )
    def test_unusable_source_conversation(self, source_id):
        service, store = _service()
        with pytest.raises(SourceConversationNotFoundError) as exc_info:
            _create(service, source_conversation_id=source_id)
        assert exc_info.value.code == "SOURCE_CONVERSATION_NOT_FOUND"
        assert store.sessions == {}


class TestCastVoteThroughService:
    def test_member_votes_in_current_round(self):
        service, _ = _service()
        created = _create(service)

        async def run():
            view = await service.get_decision_view(created.session_id, "u1")
            pid = view.proposals[0].id
            result = await service.cast_vote(created.session_id, "u1", pid, 1)
            votes = await service.get_user_votes(created.session_id, "u1")
            return pid, result, votes

        pid, result, votes = asyncio.run(run())
        assert result.success is True
        assert votes.votes == {pid: 1}
        assert votes.remaining_credits == 99

    def test_non_member_gets_failed_result(self):
        service, store = _service()
        created = _create(service)

        result = asyncio.run(service.cast_vote(created.session_id, "stranger", "proposal-1", 1))
        assert result.success is False
        assert result.error_code == "UNAUTHORIZED"
        assert store.votes == {}

    def test_unknown_session_gets_failed_result(self):
        service, _ = _service()
        result = asyncio.run(service.cast_vote("session-missing", "u1", "proposal-1", 1))
        assert result.error_code == "CONVERSATION_NOT_FOUND"

    def test_understand_session_rejected(self):
        service, store = _service()
        session = store.add_session(type=SESSION_TYPE_UNDERSTAND)
        result = asyncio.run(service.cast_vote(session.id, "u1", "proposal-1", 1))
        assert result.error_code == "NOT_DECISION_SESSION"

    def test_float_delta_raises(self):
        service, _ = _service()
        created = _create(service)
        with pytest.raises(ValidationError):
            asyncio.run(service.cast_vote(created.session_id, "u1", "proposal-1", 0.5))


class TestDecisionView:
    """What each visibility mode reveals while voting is open"""

    def _voted(self, visibility):
        service, store = _service()
        created = _create(service, visibility=visibility)
        proposals = asyncio.run(store.get_proposals(created.session_id, 1))
        store.set_votes(created.round_id, "u1", proposals[0].id, 2)
        store.set_votes(created.round_id, "u2", proposals[0].id, 3)
        store.set_votes(created.round_id, "u2", proposals[1].id, 1)
        return service, created, proposals

    def test_hidden_shows_only_own_votes(self):
        service, created, proposals = self._voted("hidden")

        data = asyncio.run(service.get_decision_view(created.session_id, "u1")).to_dict()

        assert data["userVotes"] == {proposals[0].id: 2}
        assert data["remainingCredits"] == 96
        assert data["creditBudget"] == 100
        assert "totalVotes" not in data["proposals"][0]
        assert "voterAllocations" not in data
        assert data["results"] is None
        assert data["isAdmin"] is False

    def test_aggregate_shows_totals(self):
        service, created, proposals = self._voted("aggregate")

        data = asyncio.run(service.get_decision_view(created.session_id, "u1")).to_dict()

        totals = {p["id"]: p["totalVotes"] for p in data["proposals"]}
        assert totals == {proposals[0].id: 5, proposals[1].id: 1, proposals[2].id: 0}
        assert "voterAllocations" not in data

    def test_transparent_shows_allocations(self):
        service, created, proposals = self._voted("transparent")

        data = asyncio.run(service.get_decision_view(created.session_id, "admin")).to_dict()

        assert data["isAdmin"] is True
        assert data["voterAllocations"] == {
            "u1": {proposals[0].id: 2},
            "u2": {proposals[0].id: 3, proposals[1].id: 1},
        }

    def test_view_includes_result_after_close(self):
        service, created, _ = self._voted("hidden")

        async def run():
            await service.close_round(created.round_id, "admin")
            return await service.get_decision_view(created.session_id, "u1")

        data = asyncio.run(run()).to_dict()
        assert data["currentRound"]["status"] == ROUND_RESULTS_GENERATED
        assert data["results"]["roundId"] == created.round_id
        assert data["results"]["totalVoters"] == 2

    def test_non_member_cannot_view(self):
        service, _ = _service()
        created = _create(service)
        with pytest.raises(UnauthorizedError):
            asyncio.run(service.get_decision_view(created.session_id, "stranger"))

    def test_unknown_session(self):
        service, _ = _service()
        with pytest.raises(ConversationNotFoundError):
            asyncio.run(service.get_decision_view("session-missing", "u1"))

    def test_understand_session(self):
        service, store = _service()
        session = store.add_session(type=SESSION_TYPE_UNDERSTAND)
        with pytest.raises(NotDecisionSessionError):
            asyncio.run(service.get_decision_view(session.id, "u1"))


class TestRoundResult:
    def test_result_after_close(self):
        service, _ = _service()
        created = _create(service)

        async def run():
            closed = await service.close_round(created.round_id, "admin")
            fetched = await service.get_round_result(created.round_id, "u1")
            return closed, fetched

        closed, fetched = asyncio.run(run())
        assert fetched == closed
        assert len(fetched.proposal_rankings) == 3

    def test_result_missing_while_open(self):
        service, _ = _service()
        created = _create(service)
        with pytest.raises(RoundNotFoundError) as exc_info:
            asyncio.run(service.get_round_result(created.round_id, "u1"))
        assert exc_info.value.message == "Results not available for this round"

    def test_non_member_cannot_read_result(self):
        service, _ = _service()
        created = _create(service)
        with pytest.raises(UnauthorizedError):
            asyncio.run(service.get_round_result(created.round_id, "stranger"))

    def test_start_new_round_rejects_unknown_visibility(self):
        service, _ = _service()
        created = _create(service)
        with pytest.raises(ValidationError):
            asyncio.run(service.start_new_round(created.session_id, "admin", True, visibility="public"))
