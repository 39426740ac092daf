"""
HTTP tests for the decision API

Drives the FastAPI app over the in-memory store with TestClient. Tokens are
minted with the same module the server verifies them with.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from database.models import SESSION_TYPE_UNDERSTAND, SourceConversation
from decision.service import DecisionService
from exceptions import ConfigurationError
from fakes import InMemoryDecisionStore, StaticConversations, StaticMembership
from server import auth
from server.main import create_app

SESSIONS = "/api/v1/decision-sessions"
ROUNDS = "/api/v1/decision-rounds"


@pytest.fixture
def store():
    return InMemoryDecisionStore()


@pytest.fixture
def client(store):
    if not auth.is_initialized():
        auth.init_jwt("test-secret")

    service = DecisionService(
        store,
        StaticMembership(admins={"hive-1": {"admin"}}, members={"hive-1": {"u1", "u2"}}),
        StaticConversations(
            SourceConversation(id="conv-1", hive_id="hive-1", type=SESSION_TYPE_UNDERSTAND, analysis_status="ready"),
        ),
        retry_delay=0,
    )
    return TestClient(create_app(service=service))


def _headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {auth.generate_access_token(user_id)}"}


def _create_session(client, visibility="hidden"):
    response = client.post(
        SESSIONS,
        json={
            "hiveId": "hive-1",
            "sourceConversationId": "conv-1",
            "title": "Spending priorities",
            "selectedClusters": [0, 1],
            "selectedStatements": [
                {"bucketId": "b-0", "clusterIndex": 0, "statementText": "Fix the roads", "agreePercent": 81},
                {"bucketId": "b-1", "clusterIndex": 1, "statementText": "Fund the library", "agreePercent": 66},
            ],
            "consensusThreshold": 60,
            "visibility": visibility,
        },
        headers=_headers("admin"),
    )
    assert response.status_code == 201, response.text
    return response.json()


def _proposal_ids(client, session_id):
    response = client.get(f"{SESSIONS}/{session_id}", headers=_headers("u1"))
    return [p["id"] for p in response.json()["proposals"]]


class TestAuthentication:
    def test_missing_token_is_401(self, client):
        response = client.get(f"{SESSIONS}/session-1")
        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": {"code": "UNAUTHORIZED", "message": "Not authenticated"},
        }

    def test_garbage_token_is_401(self, client):
        response = client.get(f"{SESSIONS}/session-1", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_expired_token_is_401(self, client):
        token = auth.generate_access_token("u1", expires_in=timedelta(seconds=-5))
        response = client.get(f"{SESSIONS}/session-1", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_jwt_secret_cannot_be_swapped(self, client):
        with pytest.raises(ConfigurationError):
            auth.init_jwt("another-secret")
        with pytest.raises(ConfigurationError):
            auth.init_jwt("  ")

    def test_non_member_is_403(self, client):
        created = _create_session(client)
        response = client.get(f"{SESSIONS}/{created['sessionId']}", headers=_headers("stranger"))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_request_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestCreateSession:
    def test_create_returns_ids(self, client, store):
        created = _create_session(client)
        assert created["success"] is True
        assert created["sessionId"] in store.sessions
        assert created["roundId"] in store.rounds

    def test_member_is_forbidden(self, client):
        response = client.post(
            SESSIONS,
            json={
                "hiveId": "hive-1",
                "sourceConversationId": "conv-1",
                "title": "Nope",
                "selectedStatements": [{"statementText": "x"}],
                "consensusThreshold": 60,
            },
            headers=_headers("u1"),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_threshold_out_of_range_is_400(self, client):
        response = client.post(
            SESSIONS,
            json={
                "hiveId": "hive-1",
                "sourceConversationId": "conv-1",
                "title": "Too strict",
                "selectedStatements": [{"statementText": "x"}],
                "consensusThreshold": 95,
            },
            headers=_headers("admin"),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_statement_outside_selected_clusters_is_400(self, client):
        response = client.post(
            SESSIONS,
            json={
                "hiveId": "hive-1",
                "sourceConversationId": "conv-1",
                "title": "Stray statement",
                "selectedClusters": [0],
                "selectedStatements": [
                    {"clusterIndex": 0, "statementText": "Fix the roads"},
                    {"clusterIndex": 2, "statementText": "Fund the library"},
                ],
                "consensusThreshold": 60,
            },
            headers=_headers("admin"),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert "unselected clusters: [2]" in response.json()["error"]["message"]

    def test_negative_cluster_is_400(self, client):
        response = client.post(
            SESSIONS,
            json={
                "hiveId": "hive-1",
                "sourceConversationId": "conv-1",
                "title": "Bad cluster",
                "selectedClusters": [-1],
                "selectedStatements": [{"statementText": "x"}],
                "consensusThreshold": 60,
            },
            headers=_headers("admin"),
        )
        assert response.status_code == 400

    def test_unknown_source_is_404(self, client):
        response = client.post(
            SESSIONS,
            json={
                "hiveId": "hive-1",
                "sourceConversationId": "conv-missing",
                "title": "Orphan",
                "selectedStatements": [{"statementText": "x"}],
                "consensusThreshold": 60,
            },
            headers=_headers("admin"),
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SOURCE_CONVERSATION_NOT_FOUND"


class TestVoting:
    def test_vote_and_read_back(self, client):
        created = _create_session(client)
        session_id = created["sessionId"]
        pid = _proposal_ids(client, session_id)[0]

        response = client.post(
            f"{SESSIONS}/{session_id}/votes",
            json={"proposalId": pid, "delta": 1},
            headers=_headers("u1"),
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "newVotes": 1, "remainingCredits": 99}

        votes = client.get(f"{SESSIONS}/{session_id}/votes", headers=_headers("u1")).json()
        assert votes["votes"] == {pid: 1}
        assert votes["totalCreditsSpent"] == 1
        assert votes["roundId"] == created["roundId"]

    def test_negative_votes_is_409(self, client):
        created = _create_session(client)
        pid = _proposal_ids(client, created["sessionId"])[0]

        response = client.post(
            f"{SESSIONS}/{created['sessionId']}/votes",
            json={"proposalId": pid, "delta": -1},
            headers=_headers("u1"),
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "NEGATIVE_VOTES"

    def test_budget_exceeded_reports_remaining(self, client, store):
        created = _create_session(client)
        pid = _proposal_ids(client, created["sessionId"])[0]
        store.set_votes(created["roundId"], "u1", pid, 10)

        response = client.post(
            f"{SESSIONS}/{created['sessionId']}/votes",
            json={"proposalId": pid, "delta": 1},
            headers=_headers("u1"),
        )
        assert response.status_code == 409
        body = response.json()
        assert body["error"]["code"] == "BUDGET_EXCEEDED"
        assert body["remainingCredits"] == 0

    @pytest.mark.parametrize("delta", [2, 0, True, 1.5, "1"])
    def test_delta_must_be_plus_or_minus_one(self, client, delta):
        created = _create_session(client)
        pid = _proposal_ids(client, created["sessionId"])[0]

        response = client.post(
            f"{SESSIONS}/{created['sessionId']}/votes",
            json={"proposalId": pid, "delta": delta},
            headers=_headers("u1"),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_unknown_proposal_is_404(self, client):
        created = _create_session(client)
        response = client.post(
            f"{SESSIONS}/{created['sessionId']}/votes",
            json={"proposalId": "proposal-missing", "delta": 1},
            headers=_headers("u1"),
        )
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RESPONSE_NOT_FOUND"


class TestRoundLifecycle:
    def test_close_then_start_next_round(self, client):
        created = _create_session(client, visibility="aggregate")
        session_id, round_id = created["sessionId"], created["roundId"]
        first, second = _proposal_ids(client, session_id)

        for _ in range(3):
            client.post(f"{SESSIONS}/{session_id}/votes", json={"proposalId": second, "delta": 1}, headers=_headers("u1"))
        client.post(f"{SESSIONS}/{session_id}/votes", json={"proposalId": first, "delta": 1}, headers=_headers("u2"))

        closed = client.post(f"{ROUNDS}/{round_id}/close", headers=_headers("admin"))
        assert closed.status_code == 200
        result = closed.json()["result"]
        assert [r["proposalId"] for r in result["proposalRankings"]] == [second, first]
        assert result["proposalRankings"][0]["votePercent"] == 75.0
        assert result["totalVoters"] == 2

        again = client.post(f"{ROUNDS}/{round_id}/close", headers=_headers("admin"))
        assert again.json()["result"] == result

        fetched = client.get(f"{ROUNDS}/{round_id}/result", headers=_headers("u2"))
        assert fetched.json()["result"] == result

        late = client.post(f"{SESSIONS}/{session_id}/votes", json={"proposalId": first, "delta": 1}, headers=_headers("u1"))
        assert late.status_code == 409
        assert late.json()["error"]["code"] == "ROUND_NOT_OPEN"

        started = client.post(f"{SESSIONS}/{session_id}/rounds", json={"keepProposals": True}, headers=_headers("admin"))
        assert started.status_code == 201
        body = started.json()
        assert body["round"]["roundNumber"] == 2
        assert body["round"]["status"] == "voting_open"
        assert body["round"]["visibility"] == "aggregate"

        view = client.get(f"{SESSIONS}/{session_id}", headers=_headers("u1")).json()
        assert view["currentRound"]["id"] == body["roundId"]
        assert view["userVotes"] == {}
        assert view["remainingCredits"] == 100

    def test_start_round_while_open_is_409(self, client):
        created = _create_session(client)
        response = client.post(
            f"{SESSIONS}/{created['sessionId']}/rounds",
            json={"keepProposals": True},
            headers=_headers("admin"),
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ROUND_NOT_CLOSED_OR_NOT_FINALIZED"

    def test_new_set_requires_statements(self, client):
        created = _create_session(client)
        response = client.post(
            f"{SESSIONS}/{created['sessionId']}/rounds",
            json={"keepProposals": False},
            headers=_headers("admin"),
        )
        assert response.status_code == 400

    def test_member_cannot_close(self, client):
        created = _create_session(client)
        response = client.post(f"{ROUNDS}/{created['roundId']}/close", headers=_headers("u1"))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    def test_unknown_round_is_404(self, client):
        response = client.post(f"{ROUNDS}/round-missing/close", headers=_headers("admin"))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "ROUND_NOT_FOUND"

    def test_result_before_close_is_404(self, client):
        created = _create_session(client)
        response = client.get(f"{ROUNDS}/{created['roundId']}/result", headers=_headers("u1"))
        assert response.status_code == 404


class TestMonitoring:
    def test_health_without_database(self, client):
        body = client.get("/api/health").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "not_configured"}

    def test_metrics_exposition(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "hivemind_votes_cast_total" in response.text
