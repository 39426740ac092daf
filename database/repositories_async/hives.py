"""Async HiveRepository - read-only view of hive membership and source conversations

Both tables are owned by other services; this repository never writes them.
Implements the MembershipChecker and ConversationSource collaborators.
"""

from typing import Optional

from config import get_logger
from database.models import SourceConversation
from database.repositories_async.base import BaseRepository
from database.repositories_async.helpers import build_source_conversation

logger = get_logger(__name__).bind(component="hive_repository")

ROLE_ADMIN = "admin"


class HiveRepository(BaseRepository):
    """Repository for hive membership and conversation lookups"""

    async def get_member_role(self, user_id: str, hive_id: str) -> Optional[str]:
        return await self._fetchval(
            "SELECT role FROM hive_members WHERE hive_id = $1 AND user_id = $2",
            hive_id,
            user_id,
        )

    async def is_member(self, user_id: str, hive_id: str) -> bool:
        return await self.get_member_role(user_id, hive_id) is not None

    async def is_admin(self, user_id: str, hive_id: str) -> bool:
        return await self.get_member_role(user_id, hive_id) == ROLE_ADMIN

    async def get_source_conversation(self, conversation_id: str) -> Optional[SourceConversation]:
        row = await self._fetchrow(
            """
            SELECT id, hive_id, type, analysis_status, title
            FROM conversations
            WHERE id = $1
            """,
            conversation_id,
        )
        return build_source_conversation(row) if row else None
