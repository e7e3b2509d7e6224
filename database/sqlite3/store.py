"""
SQLite Store 구현

jobs / executions / advisory_locks 테이블을 aiosql 쿼리로 다룹니다.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import aiosql
import aiosqlite

from common.clock import after, to_db_time, utcnow
from database import transactional, transactional_readonly, get_connection
from database.base import Store
from database.exception import QueryExecutionError, RecordNotFoundError
from database.model import DatabaseConfig
from database.sqlite3.connection import SQLiteDatabase
from worker.model.job import Execution, ExecutionStatus, ErrorEvent, Job, JobSpec

logger = logging.getLogger(__name__)

SQL_DIR = Path(__file__).parent / "sql"

# update_job으로 변경 가능한 필드
MUTABLE_FIELDS = frozenset({
    "state",
    "scheduled_at",
    "performed_at",
    "finished_at",
    "error",
    "error_event",
    "exception_executions",
})


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


class SQLiteStore(Store):
    """
    aiosqlite 기반 Store

    사용 예시:
        store = await SQLiteStore.create(DatabaseConfig(path="./data/jobs.db"))
        job = await store.create_job(JobSpec(job_name="send_report"))
        await store.close()
    """

    def __init__(self, database: SQLiteDatabase):
        self.database = database
        self._queries = aiosql.from_path(str(SQL_DIR / "store.sql"), "aiosqlite")

    @classmethod
    async def create(cls, config: DatabaseConfig | None = None) -> "SQLiteStore":
        """DB 초기화 (스키마 생성 포함) 후 Store 반환"""
        database = await SQLiteDatabase.create(config or DatabaseConfig())
        store = cls(database)
        try:
            await store._run_init_sql()
        except Exception:
            await database.close()
            raise
        return store

    async def _run_init_sql(self) -> None:
        """초기 테이블 생성 SQL 실행"""
        queries = aiosql.from_path(str(SQL_DIR / "init.sql"), "aiosqlite")
        # executescript는 열린 트랜잭션을 커밋하므로 트랜잭션 밖에서 실행
        async with self.database.pool.connection() as conn:
            await queries.create_jobs_table(conn)
            await queries.create_executions_table(conn)
            await queries.create_advisory_locks_table(conn)
            await queries.create_indexes(conn)
        logger.info("Store tables created from init.sql")

    def _connection(self) -> aiosqlite.Connection:
        return get_connection(self.database.name).connection

    # ------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------

    @transactional
    async def create_job(self, spec: JobSpec) -> Job:
        now = utcnow()
        job_id = str(uuid.uuid4())
        try:
            await self._queries.insert_job(
                self._connection(),
                id=job_id,
                job_name=spec.job_name,
                params=json.dumps(spec.params),
                queue_name=spec.queue_name,
                priority=spec.priority,
                scheduled_at=to_db_time(spec.scheduled_at or now),
                concurrency_key=spec.concurrency_key,
                now=to_db_time(now),
            )
        except aiosqlite.Error as e:
            raise QueryExecutionError("insert_job", str(e)) from e
        logger.debug(f"Job created: id={job_id}, job_name={spec.job_name}")
        return await self._require_job(job_id)

    @transactional_readonly
    async def get_job(self, job_id: str) -> Job | None:
        row = await self._queries.get_job_by_id(self._connection(), job_id=job_id)
        return Job.model_validate(dict(row)) if row else None

    async def _require_job(self, job_id: str) -> Job:
        job = await self.get_job(job_id)
        if job is None:
            raise RecordNotFoundError("jobs", job_id)
        return job

    @transactional
    async def delete_job(self, job_id: str) -> bool:
        affected_rows = await self._queries.delete_job(self._connection(), job_id=job_id)
        return affected_rows > 0

    @transactional
    async def update_job(self, job_id: str, **fields: Any) -> Job:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Immutable or unknown job fields: {sorted(unknown)}")

        job = await self._require_job(job_id)
        updated = job.model_copy(update=fields)
        await self._queries.update_job_fields(
            self._connection(),
            job_id=job_id,
            state=_enum_value(updated.state),
            scheduled_at=to_db_time(updated.scheduled_at),
            performed_at=to_db_time(updated.performed_at),
            finished_at=to_db_time(updated.finished_at),
            error=updated.error,
            error_event=_enum_value(updated.error_event),
            exception_executions=json.dumps(updated.exception_executions),
            now=to_db_time(utcnow()),
        )
        return await self._require_job(job_id)

    # ------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------

    @transactional
    async def create_execution(
        self, job_id: str, not_before: datetime | None = None
    ) -> tuple[Job, Execution]:
        conn = self._connection()
        # 시계가 멈춰 있어도 직전 시도의 구간과 겹치지 않음
        now = after(not_before)

        affected_rows = await self._queries.start_job(conn, job_id=job_id, now=to_db_time(now))
        if affected_rows == 0:
            raise RecordNotFoundError("jobs (unfinished)", job_id)

        job = await self._require_job(job_id)
        execution_id = str(uuid.uuid4())
        await self._queries.insert_execution(
            conn,
            id=execution_id,
            job_id=job_id,
            sequence=job.executions_count,
            created_at=to_db_time(now),
        )
        row = await self._queries.get_execution_by_id(conn, execution_id=execution_id)
        return job, Execution.model_validate(dict(row))

    @transactional
    async def finish_execution(
        self,
        execution_id: str,
        *,
        status: ExecutionStatus,
        error: str | None,
        error_event: ErrorEvent | None,
        finished_at: datetime,
        job_fields: dict[str, Any],
    ) -> Job:
        conn = self._connection()
        affected_rows = await self._queries.finish_execution(
            conn,
            execution_id=execution_id,
            status=_enum_value(status),
            error=error,
            error_event=_enum_value(error_event),
            finished_at=to_db_time(finished_at),
        )
        if affected_rows == 0:
            raise RecordNotFoundError("executions (running)", execution_id)

        row = await self._queries.get_execution_by_id(conn, execution_id=execution_id)
        return await self.update_job(row["job_id"], **job_fields)

    @transactional_readonly
    async def get_executions(self, job_id: str) -> list[Execution]:
        rows = await self._queries.get_executions_by_job(self._connection(), job_id=job_id)
        return [Execution.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------

    @transactional_readonly
    async def get_ready_jobs(
        self,
        limit: int,
        now: datetime | None = None,
        queues: list[str] | None = None,
    ) -> list[Job]:
        rows = await self._queries.get_ready_jobs(
            self._connection(),
            now=to_db_time(now or utcnow()),
            queues=json.dumps(queues) if queues is not None else None,
            limit=limit,
        )
        return [Job.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------
    # Advisory locks
    # ------------------------------------------------------------

    @transactional
    async def acquire_lock(self, job: Job, owner: str, ttl_seconds: float) -> bool:
        """
        잡 lock 획득

        BEGIN IMMEDIATE 트랜잭션 안에서 만료된 lock 정리 → 보유 확인 → 삽입을
        수행하므로 다른 프로세스와 동시에 호출되어도 한 쪽만 성공합니다.
        """
        conn = self._connection()
        now = utcnow()
        now_str = to_db_time(now)

        for lock_key in job.lock_keys:
            await self._queries.delete_expired_lock(conn, lock_key=lock_key, now=now_str)
            held = await self._queries.get_lock(conn, lock_key=lock_key)
            if held is not None:
                logger.debug(f"Lock held: key={lock_key}, owner={held['owner']}")
                return False

        expires_at = to_db_time(now + timedelta(seconds=ttl_seconds))
        for lock_key in job.lock_keys:
            await self._queries.insert_lock(
                conn, lock_key=lock_key, owner=owner, now=now_str, expires_at=expires_at
            )
        logger.debug(f"Lock acquired: job={job.id}, owner={owner}")
        return True

    @transactional
    async def release_lock(self, job: Job, owner: str) -> None:
        conn = self._connection()
        for lock_key in job.lock_keys:
            await self._queries.release_lock(conn, lock_key=lock_key, owner=owner)
        logger.debug(f"Lock released: job={job.id}, owner={owner}")

    @transactional
    async def refresh_locks(self, owner: str, ttl_seconds: float) -> int:
        expires_at = to_db_time(utcnow() + timedelta(seconds=ttl_seconds))
        return await self._queries.refresh_locks(
            self._connection(), owner=owner, expires_at=expires_at
        )

    async def close(self) -> None:
        await self.database.close()
