"""
Adapter: 잡 enqueue 진입점

새 잡을 저장하고 실행 방식(inline / async_all / external)에 따라
즉시 실행하거나, 자체 Capsule에 넘기거나, 외부 Capsule의 폴링을 기다립니다.

사용 예시:
    adapter = Adapter(store, AdapterConfig(execution_mode=ExecutionMode.ASYNC_ALL))
    job_id = await adapter.enqueue(JobSpec(job_name="send_report", params={"day": "2024-01-01"}))
    ...
    await adapter.shutdown()
"""

import asyncio
import logging
import os
import socket
import uuid

from adapter.exception import UnsupportedExecutionModeError
from adapter.model.adapter import AdapterConfig, ExecutionMode
from common.clock import utcnow
from database.base import Store
from database.exception import StoreError
from worker.base import get_job_definition
from worker.executor import Executor
from worker.main import Capsule
from worker.model.job import Job, JobSpec
from worker.reporter import ErrorReporter, get_error_reporter

logger = logging.getLogger(__name__)


class Adapter:
    """
    잡 enqueue Adapter

    잡 로직 에러는 호출자에게 전파되지 않으며 (inline 포함),
    Store에 잡을 생성하지 못한 경우에만 enqueue가 실패합니다.
    """

    def __init__(
        self,
        store: Store,
        config: AdapterConfig | None = None,
        *,
        capsule: Capsule | None = None,
        reporter: ErrorReporter | None = None,
    ):
        """
        Args:
            store: 잡 저장소
            config: Adapter 설정
            capsule: async_all 모드에서 사용할 Capsule (미지정 시 필요할 때 생성)
            reporter: Error Reporter (미지정 시 프로세스 전역 Reporter)
        """
        self._store = store
        self._config = config or AdapterConfig()
        self._capsule = capsule
        self._reporter = reporter
        self._executor = Executor(store, reporter)
        self._owner = f"{socket.gethostname()}:{os.getpid()}:inline-{uuid.uuid4().hex[:12]}"

    async def enqueue(self, spec: JobSpec, execution_mode: ExecutionMode | str | None = None) -> str:
        """
        잡 enqueue

        Args:
            spec: 잡 요청
            execution_mode: 실행 방식 (None이면 설정값)

        Returns:
            str: 생성된 잡 ID

        Raises:
            JobNotFoundError: inline/async_all 모드에서 잡 타입이 등록되지 않은 경우
            StoreError: 잡 생성 실패
        """
        try:
            mode = ExecutionMode(execution_mode or self._config.execution_mode)
        except ValueError:
            raise UnsupportedExecutionModeError(str(execution_mode))

        if mode is not ExecutionMode.EXTERNAL:
            # 로컬에서 실행할 잡 타입은 이 프로세스에 등록되어 있어야 함
            get_job_definition(spec.job_name)

        job = await self._store.create_job(spec)
        logger.info(f"Job enqueued: id={job.id}, job_name={job.job_name}, mode={mode.value}")

        if mode is ExecutionMode.INLINE:
            await self._perform_inline(job)
        elif mode is ExecutionMode.ASYNC_ALL:
            dispatched = await self.capsule.dispatch(job)
            if not dispatched:
                logger.info(f"Job left for polling: id={job.id}")

        return job.id

    async def _perform_inline(self, job: Job) -> None:
        """현재 태스크에서 잡 실행 (재시도 대기도 현재 태스크에서 처리)"""
        if job.scheduled_at > utcnow():
            logger.info(
                f"Job scheduled in the future, left for polling: id={job.id}, "
                f"scheduled_at={job.scheduled_at.isoformat()}"
            )
            return

        ttl = self._config.lock_ttl_seconds
        if not await self._store.acquire_lock(job, self._owner, ttl):
            logger.warning(f"Job locked by another worker, skipping inline run: id={job.id}")
            return

        # 실행과 재시도 대기가 TTL보다 길어도 폴러가 잡을 다시 가져가지 않도록 lock 연장
        refresher = asyncio.create_task(self._refresh_lock(ttl), name=f"inline-lock-{job.id}")
        try:
            await self._executor.execute(job.id, inline=True)
        except Exception as e:
            logger.error(f"Unexpected error executing job {job.id} inline: {e}", exc_info=True)
            self.reporter.report(e)
        finally:
            refresher.cancel()
            await asyncio.gather(refresher, return_exceptions=True)
            await self._store.release_lock(job, self._owner)

    async def _refresh_lock(self, ttl: float) -> None:
        """ttl/3 간격으로 inline 실행 중인 lock의 만료 시각 갱신"""
        while True:
            await asyncio.sleep(ttl / 3)
            try:
                await self._store.refresh_locks(self._owner, ttl)
            except StoreError as e:
                logger.warning(f"Failed to refresh inline lock: {e}")

    async def shutdown(self, timeout: float | None = None) -> None:
        """자체 Capsule 종료 (여러 번 호출해도 안전)"""
        if self._capsule is not None:
            await self._capsule.shutdown(timeout)

    @property
    def capsule(self) -> Capsule:
        """async_all 모드용 Capsule (없으면 생성)"""
        if self._capsule is None:
            self._capsule = Capsule(self._store, self._config.capsule, reporter=self._reporter)
        return self._capsule

    @property
    def reporter(self) -> ErrorReporter:
        return self._reporter or get_error_reporter()

    @property
    def execution_mode(self) -> ExecutionMode:
        return self._config.execution_mode
