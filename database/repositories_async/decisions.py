"""Async DecisionRepository - PostgreSQL implementation of the decision store

Handles:
- Decision sessions (rows in conversations with type 'decide')
- Proposals, grouped into numbered proposal sets
- Rounds and their status compare-and-swap
- Vote ledger rows (zero counts are deleted)
- Result snapshots (one per round)

Locking:
- lock_allocation: FOR SHARE on the round row plus a transaction-scoped
  advisory lock on (round, user). Same-user casts serialize; a close waits
  for in-flight casts and casts wait for a close.
- lock_result_slot: FOR UPDATE on the round row for the whole
  aggregate-and-write unit. Its reads run on the same connection, so a
  close never holds more than one pooled connection.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import asyncpg

from config import get_logger
from database.models import (
    ROUND_RESULTS_GENERATED,
    ROUND_VOTING_CLOSED,
    ROUND_VOTING_OPEN,
    SESSION_TYPE_DECIDE,
    DecisionResult,
    DecisionRound,
    DecisionSession,
    Proposal,
    SelectedStatement,
    Vote,
)
from database.repositories_async.base import BaseRepository
from database.repositories_async.helpers import (
    build_proposal,
    build_result,
    build_round,
    build_session,
    build_vote,
    serialize_rankings,
)
from exceptions import RoundNotFinalizedError, RoundNotFoundError, ValidationError

logger = get_logger(__name__).bind(component="decision_repository")

_ROUND_COLUMNS = """
    id, conversation_id, round_number, proposal_set, status, visibility,
    deadline, opened_at, closed_at
"""

_PROPOSAL_COLUMNS = """
    id, conversation_id, proposal_set, source_bucket_id, source_cluster_index,
    statement_text, original_agree_percent, display_order, created_at
"""

_RESULT_QUERY = """
    SELECT r.round_id, dr.round_number, r.proposal_rankings, r.total_voters,
           r.ai_analysis, r.generated_at
    FROM decision_results r
    JOIN decision_rounds dr ON dr.id = r.round_id
    WHERE r.round_id = $1
"""


def generate_decision_id() -> str:
    return str(uuid.uuid4())


class _PostgresAllocation:
    """A user's allocation inside an open cast_vote transaction"""

    def __init__(
        self,
        conn: asyncpg.Connection,
        round_: Optional[DecisionRound],
        votes: Dict[str, int],
        round_id: str,
        user_id: str,
    ):
        self._conn = conn
        self.round = round_
        self.votes = votes
        self._round_id = round_id
        self._user_id = user_id

    async def write(self, proposal_id: str, vote_count: int) -> None:
        if vote_count == 0:
            await self._conn.execute(
                """
                DELETE FROM decision_votes
                WHERE round_id = $1 AND user_id = $2 AND proposal_id = $3
                """,
                self._round_id,
                self._user_id,
                proposal_id,
            )
            self.votes.pop(proposal_id, None)
            return

        await self._conn.execute(
            """
            INSERT INTO decision_votes (round_id, user_id, proposal_id, votes, created_at, updated_at)
            VALUES ($1, $2, $3, $4, NOW(), NOW())
            ON CONFLICT (round_id, user_id, proposal_id) DO UPDATE SET
                votes = EXCLUDED.votes,
                updated_at = NOW()
            """,
            self._round_id,
            self._user_id,
            proposal_id,
            vote_count,
        )
        self.votes[proposal_id] = vote_count


class _PostgresResultSlot:
    """The result row for one round, with the round row locked FOR UPDATE.

    Reads go through the locked connection; finalize holds exactly one.
    """

    def __init__(
        self,
        repo: "DecisionRepository",
        conn: asyncpg.Connection,
        round_: DecisionRound,
        existing: Optional[DecisionResult],
    ):
        self._repo = repo
        self._conn = conn
        self.round = round_
        self.existing = existing

    async def get_round_by_number(
        self, session_id: str, round_number: int
    ) -> Optional[DecisionRound]:
        return await self._repo.get_round_by_number(session_id, round_number, conn=self._conn)

    async def get_proposals(self, session_id: str, proposal_set: int) -> List[Proposal]:
        return await self._repo.get_proposals(session_id, proposal_set, conn=self._conn)

    async def get_round_votes(self, round_id: str) -> List[Vote]:
        return await self._repo.get_round_votes(round_id, conn=self._conn)

    async def get_result(self, round_id: str) -> Optional[DecisionResult]:
        return await self._repo.get_result(round_id, conn=self._conn)

    async def write(self, result: DecisionResult) -> DecisionResult:
        generated_at = await self._conn.fetchval(
            """
            INSERT INTO decision_results
                (round_id, proposal_rankings, total_voters, ai_analysis, generated_at)
            VALUES ($1, $2, $3, $4, COALESCE($5, NOW()))
            RETURNING generated_at
            """,
            result.round_id,
            serialize_rankings(result.proposal_rankings),
            result.total_voters,
            result.ai_analysis,
            result.generated_at,
        )
        status = await self._conn.execute(
            """
            UPDATE decision_rounds
            SET status = $2
            WHERE id = $1 AND status = $3
            """,
            result.round_id,
            ROUND_RESULTS_GENERATED,
            ROUND_VOTING_CLOSED,
        )
        if BaseRepository._parse_row_count(status) == 0:
            # Row is locked FOR UPDATE and was voting_closed when read
            logger.warning("round status unchanged on finalize", round_id=result.round_id)
        self.round.status = ROUND_RESULTS_GENERATED
        self.existing = result.model_copy(update={"generated_at": generated_at})
        return self.existing


class DecisionRepository(BaseRepository):
    """Repository for decision sessions, rounds, votes and results"""

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Optional[DecisionSession]:
        row = await self._fetchrow(
            """
            SELECT id, hive_id, title, type, description, source_conversation_id,
                   created_by, created_at
            FROM conversations
            WHERE id = $1
            """,
            session_id,
        )
        return build_session(row) if row else None

    async def get_round(self, round_id: str) -> Optional[DecisionRound]:
        row = await self._fetchrow(
            f"SELECT {_ROUND_COLUMNS} FROM decision_rounds WHERE id = $1",
            round_id,
        )
        return build_round(row) if row else None

    async def get_current_round(self, session_id: str) -> Optional[DecisionRound]:
        """Latest round by round number (open or not)"""
        row = await self._fetchrow(
            f"""
            SELECT {_ROUND_COLUMNS} FROM decision_rounds
            WHERE conversation_id = $1
            ORDER BY round_number DESC
            LIMIT 1
            """,
            session_id,
        )
        return build_round(row) if row else None

    async def get_round_by_number(
        self,
        session_id: str,
        round_number: int,
        conn: Optional[asyncpg.Connection] = None,
    ) -> Optional[DecisionRound]:
        row = await self._fetchrow(
            f"""
            SELECT {_ROUND_COLUMNS} FROM decision_rounds
            WHERE conversation_id = $1 AND round_number = $2
            """,
            session_id,
            round_number,
            conn=conn,
        )
        return build_round(row) if row else None

    async def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        row = await self._fetchrow(
            f"SELECT {_PROPOSAL_COLUMNS} FROM decision_proposals WHERE id = $1",
            proposal_id,
        )
        return build_proposal(row) if row else None

    async def get_proposals(
        self,
        session_id: str,
        proposal_set: int,
        conn: Optional[asyncpg.Connection] = None,
    ) -> List[Proposal]:
        rows = await self._fetch(
            f"""
            SELECT {_PROPOSAL_COLUMNS} FROM decision_proposals
            WHERE conversation_id = $1 AND proposal_set = $2
            ORDER BY display_order ASC, id ASC
            """,
            session_id,
            proposal_set,
            conn=conn,
        )
        return [build_proposal(row) for row in rows]

    async def get_user_votes(self, round_id: str, user_id: str) -> Dict[str, int]:
        rows = await self._fetch(
            """
            SELECT proposal_id, votes FROM decision_votes
            WHERE round_id = $1 AND user_id = $2 AND votes > 0
            """,
            round_id,
            user_id,
        )
        return {row["proposal_id"]: row["votes"] for row in rows}

    async def get_round_votes(
        self, round_id: str, conn: Optional[asyncpg.Connection] = None
    ) -> List[Vote]:
        rows = await self._fetch(
            """
            SELECT round_id, user_id, proposal_id, votes, updated_at
            FROM decision_votes
            WHERE round_id = $1
            ORDER BY user_id, proposal_id
            """,
            round_id,
            conn=conn,
        )
        return [build_vote(row) for row in rows]

    async def get_result(
        self, round_id: str, conn: Optional[asyncpg.Connection] = None
    ) -> Optional[DecisionResult]:
        row = await self._fetchrow(_RESULT_QUERY, round_id, conn=conn)
        return build_result(row) if row else None

    # -------------------------------------------------------------------------
    # Atomic units
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def lock_allocation(self, round_id: str, user_id: str):
        """Open a cast_vote transaction holding the (round, user) lock.

        Yields:
            _PostgresAllocation with the round as seen under lock and the
            user's full current allocation
        """
        async with self.transaction("cast_vote") as conn:
            round_row = await conn.fetchrow(
                f"SELECT {_ROUND_COLUMNS} FROM decision_rounds WHERE id = $1 FOR SHARE",
                round_id,
            )
            await conn.execute(
                "SELECT pg_advisory_xact_lock(hashtextextended($1, 0))",
                f"{round_id}:{user_id}",
            )
            rows = await conn.fetch(
                """
                SELECT proposal_id, votes FROM decision_votes
                WHERE round_id = $1 AND user_id = $2 AND votes > 0
                """,
                round_id,
                user_id,
            )
            yield _PostgresAllocation(
                conn,
                build_round(round_row) if round_row else None,
                {row["proposal_id"]: row["votes"] for row in rows},
                round_id,
                user_id,
            )

    async def mark_round_closed(self, round_id: str) -> Optional[DecisionRound]:
        """Compare-and-swap voting_open -> voting_closed.

        Returns:
            The closed round if this call flipped it, None if it was not open
        """
        async with self.transaction("close_round") as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE decision_rounds
                SET status = $2, closed_at = NOW()
                WHERE id = $1 AND status = $3
                RETURNING {_ROUND_COLUMNS}
                """,
                round_id,
                ROUND_VOTING_CLOSED,
                ROUND_VOTING_OPEN,
            )
        return build_round(row) if row else None

    @asynccontextmanager
    async def lock_result_slot(self, round_id: str):
        """Open the finalize transaction with the round row locked FOR UPDATE"""
        async with self.transaction("finalize_round") as conn:
            round_row = await conn.fetchrow(
                f"SELECT {_ROUND_COLUMNS} FROM decision_rounds WHERE id = $1 FOR UPDATE",
                round_id,
            )
            if round_row is None:
                raise RoundNotFoundError(round_id)

            yield _PostgresResultSlot(
                self,
                conn,
                build_round(round_row),
                await self.get_result(round_id, conn=conn),
            )

    async def _insert_proposals(
        self,
        conn: asyncpg.Connection,
        session_id: str,
        proposal_set: int,
        statements: List[SelectedStatement],
    ) -> None:
        await conn.executemany(
            """
            INSERT INTO decision_proposals
                (id, conversation_id, proposal_set, source_bucket_id, source_cluster_index,
                 statement_text, original_agree_percent, display_order, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NOW())
            """,
            [
                (
                    generate_decision_id(),
                    session_id,
                    proposal_set,
                    stmt.bucket_id,
                    stmt.cluster_index,
                    stmt.statement_text,
                    stmt.agree_percent,
                    index,
                )
                for index, stmt in enumerate(statements)
            ],
        )

    async def _insert_round(
        self,
        conn: asyncpg.Connection,
        session_id: str,
        round_number: int,
        proposal_set: int,
        visibility: str,
        deadline: Optional[datetime],
    ) -> DecisionRound:
        row = await conn.fetchrow(
            f"""
            INSERT INTO decision_rounds
                (id, conversation_id, round_number, proposal_set, status, visibility,
                 deadline, opened_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, NOW())
            RETURNING {_ROUND_COLUMNS}
            """,
            generate_decision_id(),
            session_id,
            round_number,
            proposal_set,
            ROUND_VOTING_OPEN,
            visibility,
            deadline,
        )
        return build_round(row)

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
    ) -> Tuple[DecisionSession, DecisionRound]:
        """Insert session, proposal set 1 and round 1 in one transaction"""
        session_id = generate_decision_id()

        async with self.transaction("create_session") as conn:
            session_row = await conn.fetchrow(
                """
                INSERT INTO conversations
                    (id, hive_id, type, title, description, phase, analysis_status,
                     source_conversation_id, created_by, created_at)
                VALUES ($1, $2, $3, $4, $5, 'vote_open', 'ready', $6, $7, NOW())
                RETURNING id, hive_id, title, type, description, source_conversation_id,
                          created_by, created_at
                """,
                session_id,
                hive_id,
                SESSION_TYPE_DECIDE,
                title,
                description,
                source_conversation_id,
                created_by,
            )
            await self._insert_proposals(conn, session_id, 1, statements)
            first_round = await self._insert_round(
                conn, session_id, 1, 1, visibility, deadline
            )

        logger.info(
            "created decision session",
            session_id=session_id,
            hive_id=hive_id,
            proposals=len(statements),
        )
        return build_session(session_row), first_round

    async def open_next_round(
        self,
        session_id: str,
        previous_round_id: Optional[str],
        statements: Optional[List[SelectedStatement]],
        visibility: str,
        deadline: Optional[datetime] = None,
    ) -> DecisionRound:
        """Open round N+1 after re-checking, under lock, that round N is final.

        statements=None reuses the previous round's proposal set.
        """
        async with self.transaction("start_new_round") as conn:
            # Session row is the mutex; the next statement then sees any
            # round a concurrent starter committed while we waited
            await conn.execute(
                "SELECT 1 FROM conversations WHERE id = $1 FOR UPDATE", session_id
            )
            latest_row = await conn.fetchrow(
                f"""
                SELECT {_ROUND_COLUMNS} FROM decision_rounds
                WHERE conversation_id = $1
                ORDER BY round_number DESC
                LIMIT 1
                """,
                session_id,
            )
            latest = build_round(latest_row) if latest_row else None

            if latest is not None and (
                latest.id != previous_round_id or not latest.is_finalized
            ):
                raise RoundNotFinalizedError(latest.id, latest.status)
            if latest is None and previous_round_id is not None:
                raise RoundNotFoundError(previous_round_id)

            if statements is None:
                if latest is None:
                    raise ValidationError(
                        "No previous round to keep proposals from", field="keep_proposals"
                    )
                proposal_set = latest.proposal_set
            else:
                proposal_set = await conn.fetchval(
                    """
                    SELECT COALESCE(MAX(proposal_set), 0) + 1
                    FROM decision_proposals WHERE conversation_id = $1
                    """,
                    session_id,
                )
                await self._insert_proposals(conn, session_id, proposal_set, statements)

            new_round = await self._insert_round(
                conn,
                session_id,
                latest.round_number + 1 if latest else 1,
                proposal_set,
                visibility,
                deadline,
            )

        logger.info(
            "opened decision round",
            session_id=session_id,
            round_id=new_round.id,
            round_number=new_round.round_number,
            proposal_set=proposal_set,
        )
        return new_round
