"""
데이터베이스 패키지

Store 인터페이스와 SQLite(aiosqlite) 구현, 트랜잭션 데코레이터를 제공합니다.

사용 예시:
    from database import transactional, get_connection

    class SomeStore:
        def __init__(self, db):
            self.database = db

        @transactional
        async def touch(self, job_id):
            ctx = get_connection(self.database.name)
            await ctx.execute("UPDATE jobs SET updated_at = ? WHERE id = ?", (...))

    # 수동 트랜잭션
    async with db.transaction() as ctx:
        await ctx.execute("DELETE FROM ...")
"""

import functools
from typing import Any, Callable

from database.context import get_connection, set_connection, clear_connection
from database.exception import (
    StoreError,
    ConnectionPoolExhaustedError,
    TransactionError,
    ReadOnlyTransactionError,
    QueryExecutionError,
    RecordNotFoundError,
)

__all__ = [
    'transactional',
    'transactional_readonly',
    'get_connection',
    'set_connection',
    'clear_connection',
    'StoreError',
    'ConnectionPoolExhaustedError',
    'TransactionError',
    'ReadOnlyTransactionError',
    'QueryExecutionError',
    'RecordNotFoundError',
]


def transactional(func: Callable | None = None, *, readonly: bool = False):
    """
    메서드를 self.database의 트랜잭션 안에서 실행하는 데코레이터

    이미 같은 DB의 트랜잭션이 열려 있으면 그 트랜잭션에 합류합니다.
    @transactional 과 @transactional(readonly=True) 형태 모두 지원합니다.
    """
    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        async def wrapper(self, *args: Any, **kwargs: Any) -> Any:
            db = self.database
            if get_connection(db.name, optional=True) is not None:
                return await fn(self, *args, **kwargs)
            async with db.transaction(readonly=readonly):
                return await fn(self, *args, **kwargs)
        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


def transactional_readonly(func: Callable) -> Callable:
    """읽기 전용 트랜잭션 데코레이터"""
    return transactional(func, readonly=True)
