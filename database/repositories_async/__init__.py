"""Async PostgreSQL repositories using asyncpg connection pooling"""

from database.repositories_async.base import BaseRepository
from database.repositories_async.decisions import DecisionRepository
from database.repositories_async.hives import HiveRepository

__all__ = [
    "BaseRepository",
    "DecisionRepository",
    "HiveRepository",
]
