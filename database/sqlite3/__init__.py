"""
SQLite3 Store 구현

사용 예시:
    from database.model import DatabaseConfig
    from database.sqlite3 import SQLiteStore

    store = await SQLiteStore.create(DatabaseConfig(path="./data/jobs.db"))
"""

from database.sqlite3.connection import (
    AsyncConnectionPool,
    ManagedTransaction,
    SQLiteDatabase,
    TransactionContext,
)
from database.sqlite3.store import SQLiteStore

__all__ = [
    'AsyncConnectionPool',
    'ManagedTransaction',
    'SQLiteDatabase',
    'SQLiteStore',
    'TransactionContext',
]
