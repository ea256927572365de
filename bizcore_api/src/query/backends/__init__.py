"""
Query Executor implementations.

- memory: in-process collections (development and tests)
- sqlalchemy: async SQLAlchemy over the service's Postgres models
"""
from .base import QueryBackend, QueryExecutor, Record
from .memory import MemoryBackend, MemoryQueryExecutor
from .sqlalchemy import SqlAlchemyBackend, SqlAlchemyQueryExecutor

__all__ = [
    "QueryBackend",
    "QueryExecutor",
    "Record",
    "MemoryBackend",
    "MemoryQueryExecutor",
    "SqlAlchemyBackend",
    "SqlAlchemyQueryExecutor",
]
