"""
SQLite3 비동기 커넥션풀 모듈

aiosqlite 연결을 고정 크기 풀로 관리합니다.
여러 Capsule 프로세스가 같은 DB 파일을 공유하므로 쓰기 트랜잭션은
BEGIN IMMEDIATE로 시작하여 lock 획득(조회 → 삽입)이 원자적으로 처리됩니다.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import aiosqlite

from database.context import set_connection, clear_connection
from database.exception import (
    ConnectionPoolExhaustedError,
    QueryExecutionError,
    ReadOnlyTransactionError,
    TransactionError,
)
from database.model import DatabaseConfig, PoolSettings, SqliteSettings

logger = logging.getLogger(__name__)

WRITE_PREFIXES = ('INSERT', 'UPDATE', 'DELETE', 'REPLACE', 'CREATE', 'DROP', 'ALTER')


class TransactionContext:
    """
    하나의 연결 위에서 열린 트랜잭션

    aiosql 쿼리는 connection 속성을 직접 사용하고,
    테스트나 관리 작업은 execute / fetch_one / fetch_all을 사용합니다.
    """

    def __init__(self, connection: aiosqlite.Connection, readonly: bool = False):
        self._connection = connection
        self._readonly = readonly
        self._in_transaction = False

    @property
    def connection(self) -> aiosqlite.Connection:
        return self._connection

    @property
    def readonly(self) -> bool:
        return self._readonly

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    async def begin(self) -> None:
        # 읽기는 DEFERRED, 쓰기는 바로 RESERVED lock을 잡음
        await self._connection.execute("BEGIN DEFERRED" if self._readonly else "BEGIN IMMEDIATE")
        self._in_transaction = True

    async def commit(self) -> None:
        if self._in_transaction:
            await self._connection.commit()
            self._in_transaction = False

    async def rollback(self) -> None:
        if self._in_transaction:
            await self._connection.rollback()
            self._in_transaction = False

    async def execute(self, sql: str, parameters: Any = None) -> aiosqlite.Cursor:
        """SQL 실행 (읽기 전용 트랜잭션에서 쓰기 쿼리는 거부)"""
        if self._readonly and sql.lstrip().upper().startswith(WRITE_PREFIXES):
            raise ReadOnlyTransactionError("Cannot execute write query in readonly transaction")

        logger.debug(f"[SQL] {' '.join(sql.split())} | params: {parameters}")
        return await self._connection.execute(sql, parameters or ())

    async def fetch_one(self, sql: str, parameters: Any = None) -> aiosqlite.Row | None:
        async with await self.execute(sql, parameters) as cursor:
            return await cursor.fetchone()

    async def fetch_all(self, sql: str, parameters: Any = None) -> list[aiosqlite.Row]:
        async with await self.execute(sql, parameters) as cursor:
            return list(await cursor.fetchall())


class AsyncConnectionPool:
    """
    고정 크기 aiosqlite 커넥션풀

    유휴 연결은 asyncio.Queue에 보관되며, pool_timeout 동안 연결을 얻지 못하면
    ConnectionPoolExhaustedError가 발생합니다.
    """

    def __init__(
        self,
        db_path: str,
        pool_settings: PoolSettings | None = None,
        sqlite_settings: SqliteSettings | None = None,
    ):
        self._db_path = Path(db_path)
        self._pool_settings = pool_settings or PoolSettings()
        self._sqlite_settings = sqlite_settings or SqliteSettings()

        self._connections: list[aiosqlite.Connection] = []
        self._idle: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue()
        self._closed = False

    async def initialize(self) -> None:
        """연결 생성 및 PRAGMA 적용"""
        if self._connections:
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(self._pool_settings.pool_size):
            conn = await self._open()
            self._connections.append(conn)
            self._idle.put_nowait(conn)

        logger.info(
            f"Connection pool initialized: {self._db_path} "
            f"(size={self._pool_settings.pool_size}, journal_mode={self._sqlite_settings.journal_mode})"
        )

    async def _open(self) -> aiosqlite.Connection:
        # isolation_level=None: 트랜잭션은 TransactionContext.begin()에서만 시작
        opts = self._sqlite_settings
        conn = await aiosqlite.connect(
            self._db_path,
            timeout=opts.busy_timeout / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = aiosqlite.Row
        for pragma in (
            f"busy_timeout={opts.busy_timeout}",
            f"journal_mode={opts.journal_mode}",
            f"synchronous={opts.synchronous}",
            f"foreign_keys={'ON' if opts.foreign_keys else 'OFF'}",
        ):
            await conn.execute(f"PRAGMA {pragma}")
        return conn

    async def acquire(self, timeout: float | None = None) -> aiosqlite.Connection:
        if self._closed or not self._connections:
            raise RuntimeError(f"Connection pool is not available: {self._db_path}")

        timeout = timeout or self._pool_settings.pool_timeout
        try:
            return await asyncio.wait_for(self._idle.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ConnectionPoolExhaustedError(
                f"Connection pool exhausted. Timeout after {timeout}s"
            )

    def release(self, conn: aiosqlite.Connection) -> None:
        if not self._closed:
            self._idle.put_nowait(conn)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """트랜잭션 없이 연결 사용 (스키마 스크립트 실행용)"""
        conn = await self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for conn in self._connections:
            try:
                await conn.close()
            except aiosqlite.Error as e:
                logger.error(f"Error closing connection: {e}")
        self._connections.clear()
        logger.info(f"Connection pool closed: {self._db_path}")

    @property
    def size(self) -> int:
        return len(self._connections)

    @property
    def available(self) -> int:
        return self._idle.qsize()


class ManagedTransaction:
    """
    트랜잭션 컨텍스트 매니저

    진입 시 풀에서 연결을 얻어 트랜잭션을 열고 현재 태스크의 연결로 등록합니다.
    블록 안에서 발생한 aiosqlite 에러는 롤백 후 QueryExecutionError로 변환됩니다.
    """

    def __init__(self, db: 'SQLiteDatabase', readonly: bool = False):
        self._db = db
        self._readonly = readonly
        self._conn: aiosqlite.Connection | None = None
        self._ctx: TransactionContext | None = None
        self._token = None

    async def __aenter__(self) -> TransactionContext:
        self._conn = await self._db.pool.acquire()
        self._ctx = TransactionContext(self._conn, self._readonly)
        try:
            await self._ctx.begin()
        except aiosqlite.Error as e:
            self._db.pool.release(self._conn)
            raise TransactionError(f"Failed to begin transaction: {e}") from e

        self._token = set_connection(self._db.name, self._ctx)
        return self._ctx

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        try:
            if exc_type is None:
                await self._ctx.commit()
            else:
                await self._ctx.rollback()
        except aiosqlite.Error as e:
            raise TransactionError(f"Failed to finish transaction: {e}") from e
        finally:
            clear_connection(self._token)
            self._db.pool.release(self._conn)

        if exc_type is not None and issubclass(exc_type, aiosqlite.Error):
            raise QueryExecutionError("transaction", str(exc_val)) from exc_val
        return False


class SQLiteDatabase:
    """
    SQLite 데이터베이스 (커넥션풀 + 트랜잭션)

    사용 예시:
        db = await SQLiteDatabase.create(DatabaseConfig(path="./data/jobs.db"))

        async with db.transaction() as ctx:
            await ctx.execute("DELETE FROM advisory_locks WHERE expires_at <= ?", (now,))
    """

    def __init__(self, config: DatabaseConfig):
        self._config = config
        self._pool = AsyncConnectionPool(
            db_path=config.path,
            pool_settings=config.pool,
            sqlite_settings=config.options,
        )

    @classmethod
    async def create(cls, config: DatabaseConfig) -> 'SQLiteDatabase':
        instance = cls(config)
        await instance._pool.initialize()
        logger.info(f"SQLiteDatabase '{config.name}' initialized: {config.path}")
        return instance

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def pool(self) -> AsyncConnectionPool:
        return self._pool

    def transaction(self, readonly: bool = False) -> ManagedTransaction:
        return ManagedTransaction(self, readonly)

    async def close(self) -> None:
        await self._pool.close()
