"""
Capsule: 잡 실행 워커풀 + 폴러 모듈

jobs 테이블에서 실행 시점에 도달한 잡을 폴링하여 advisory lock을 잡은 뒤
워커에 할당합니다. 워커는 잡 하나의 시도 루프를 끝까지 실행하고 lock을 반환합니다.

사용 예시:
    store = await SQLiteStore.create(DatabaseConfig(path="./data/jobs.db"))
    capsule = Capsule(store, CapsuleConfig(max_workers=3))
    await capsule.start()
    ...
    await capsule.shutdown(timeout=10)
"""

import asyncio
import logging
import os
import socket
import uuid

from database.base import Store
from database.exception import StoreError
from worker.exception import CapsuleError
from worker.executor import Executor
from worker.model.capsule import CapsuleConfig
from worker.model.job import Job
from worker.reporter import ErrorReporter, get_error_reporter

logger = logging.getLogger(__name__)


class Capsule:
    """
    잡 실행 워커풀

    - 폴러: ready 큐의 빈 자리만큼만 잡을 클레임 (backpressure)
    - 워커: max_workers개의 태스크가 ready 큐에서 잡을 하나씩 꺼내 실행
    - shutdown: 새 클레임 중단 후 실행 중인 시도가 끝나기를 timeout까지 대기
    """

    def __init__(
        self,
        store: Store,
        config: CapsuleConfig | None = None,
        *,
        reporter: ErrorReporter | None = None,
        executor: Executor | None = None,
    ):
        self._store = store
        self._config = config or CapsuleConfig()
        self._reporter = reporter
        self._executor = executor or Executor(store, reporter)
        self._owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"

        self._running = False
        self._stopping = False
        self._wakeup: asyncio.Event | None = None
        self._ready: asyncio.Queue | None = None
        self._poller_task: asyncio.Task | None = None
        self._worker_tasks: dict[int, asyncio.Task] = {}
        self._active: dict[int, Job] = {}

    async def start(self) -> None:
        """워커 태스크와 폴러 태스크 시작 (즉시 반환)"""
        if self._running:
            logger.warning("Capsule is already running")
            return
        if self._stopping:
            raise CapsuleError("Capsule has been shut down")

        self._running = True
        self._wakeup = asyncio.Event()
        self._ready = asyncio.Queue(maxsize=self._config.ready_queue_capacity)

        for index in range(self._config.max_workers):
            self._worker_tasks[index] = asyncio.create_task(
                self._worker_loop(index), name=f"capsule-worker-{index}"
            )
        self._poller_task = asyncio.create_task(self._poll_loop(), name="capsule-poller")

        logger.info(
            f"Capsule started (owner={self._owner}, max_workers={self._config.max_workers}, "
            f"poll_interval={self._config.poll_interval_seconds}s, "
            f"ready_queue_capacity={self._config.ready_queue_capacity})"
        )

    async def shutdown(self, timeout: float | None = None) -> None:
        """
        Capsule graceful shutdown (여러 번 호출해도 안전)

        Args:
            timeout: 실행 중인 워커 대기 시간 (None이면 shutdown_timeout_seconds).
                초과 시 워커를 강제 종료하지 않고 반환하며, 해당 잡은 lock 만료 후
                다른 폴러가 다시 가져갑니다.
        """
        if self._stopping:
            return
        self._stopping = True

        if not self._running:
            return

        logger.info("Stopping Capsule...")
        self._wakeup.set()

        if self._poller_task:
            await asyncio.gather(self._poller_task, return_exceptions=True)

        # ready 큐를 비운 직후 같은 틱에서 대기 중인 워커를 취소해야 잡이 남지 않음
        pending_jobs = self._drain_ready()
        for index, task in self._worker_tasks.items():
            if index not in self._active:
                task.cancel()
        await self._release_jobs(pending_jobs)

        timeout = self._config.shutdown_timeout_seconds if timeout is None else timeout
        tasks = list(self._worker_tasks.values())
        if self._active:
            logger.info(f"Waiting for {len(self._active)} running jobs...")
        _, pending = await asyncio.wait(tasks, timeout=timeout)

        await self._release_jobs(self._drain_ready())

        if pending:
            logger.warning(
                f"Shutdown timeout ({timeout}s), {len(self._active)} jobs still running: "
                f"{[job.id for job in self._active.values()]}"
            )
        else:
            logger.info("All workers stopped")

        self._running = False
        logger.info("Capsule stopped")

    async def dispatch(self, job: Job) -> bool:
        """
        폴러를 거치지 않고 잡을 바로 워커풀에 전달 (scheduled_at 무시)

        Returns:
            True: ready 큐에 추가됨
            False: 다른 소유자가 lock 보유 중, ready 큐가 가득 참, 또는 종료 중
                (잡은 queued로 남음)
        """
        if self._stopping:
            logger.info(f"Capsule is stopping, leaving job queued: id={job.id}")
            return False
        if not self._running:
            await self.start()

        if not await self._store.acquire_lock(job, self._owner, self._config.lock_ttl_seconds):
            logger.debug(f"Job already locked, skipping dispatch: id={job.id}")
            return False

        if self._stopping:
            await self._store.release_lock(job, self._owner)
            return False

        try:
            self._ready.put_nowait(job)
        except asyncio.QueueFull:
            # ready 큐가 가득 차면 기다리지 않고 폴러에 맡김
            await self._store.release_lock(job, self._owner)
            logger.info(f"Ready queue is full, leaving job for polling: id={job.id}")
            return False
        logger.debug(f"Job dispatched: id={job.id}")
        return True

    # ------------------------------------------------------------
    # Poller
    # ------------------------------------------------------------

    async def _poll_loop(self) -> None:
        """메인 폴링 루프"""
        failures = 0
        while not self._stopping:
            try:
                await self._store.refresh_locks(self._owner, self._config.lock_ttl_seconds)
                claimed, limit = await self._poll_and_claim()
                failures = 0
            except StoreError as e:
                failures += 1
                backoff = min(
                    self._config.poll_interval_seconds * (2 ** failures),
                    self._config.max_backoff_seconds,
                )
                logger.warning(f"Store error in poller: {e}. Retrying in {backoff:.1f}s...")
                await self._sleep(backoff)
                continue
            except Exception as e:
                failures += 1
                logger.error(f"Unexpected error in poller: {e}", exc_info=True)
                await self._sleep(self._config.poll_interval_seconds)
                continue

            # 배치를 가득 채웠으면 남은 잡이 더 있을 수 있으므로 바로 다시 폴링
            if limit > 0 and claimed == limit:
                continue
            await self._sleep(self._config.poll_interval_seconds)

    async def _poll_and_claim(self) -> tuple[int, int]:
        """
        실행 가능한 잡 조회 후 lock 획득에 성공한 잡을 ready 큐에 추가

        Returns:
            (클레임한 잡 수, 조회 한도)
        """
        limit = self._free_slots()
        if limit <= 0:
            logger.debug("Ready queue is full, deferring claims")
            return 0, 0

        jobs = await self._store.get_ready_jobs(limit, queues=self._config.queues)
        if not jobs:
            logger.debug("No ready jobs found")
            return 0, limit

        claimed = 0
        for job in jobs:
            if self._stopping:
                break
            if not await self._store.acquire_lock(job, self._owner, self._config.lock_ttl_seconds):
                # 다른 워커/프로세스가 보유 중
                continue
            try:
                self._ready.put_nowait(job)
            except asyncio.QueueFull:
                await self._store.release_lock(job, self._owner)
                break
            claimed += 1

        if claimed:
            logger.debug(f"Claimed {claimed} jobs")
        return claimed, limit

    def _free_slots(self) -> int:
        return self._ready.maxsize - self._ready.qsize()

    async def _sleep(self, seconds: float) -> None:
        """인터럽트 가능한 sleep (워커가 자리를 비우거나 종료 시 즉시 깨어남)"""
        self._wakeup.clear()
        if self._stopping:
            return
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------

    async def _worker_loop(self, index: int) -> None:
        """워커 태스크: ready 큐에서 잡을 하나씩 꺼내 실행"""
        while not self._stopping:
            job = await self._ready.get()
            self._active[index] = job
            try:
                await self._execute_job(job)
            finally:
                self._active.pop(index, None)
                self._ready.task_done()
                self._wakeup.set()

    async def _execute_job(self, job: Job) -> None:
        """잡 실행 (엔진 결함은 여기서 격리하여 Error Reporter로 전달)"""
        try:
            await self._executor.execute(job.id, should_stop=lambda: self._stopping)
        except Exception as e:
            logger.error(f"Unexpected error executing job {job.id}: {e}", exc_info=True)
            self.reporter.report(e)
        finally:
            try:
                await self._store.release_lock(job, self._owner)
            except Exception as e:
                logger.error(f"Failed to release lock for job {job.id}: {e}", exc_info=True)
                self.reporter.report(e)

    def _drain_ready(self) -> list[Job]:
        """아직 시작하지 않은 클레임 잡을 ready 큐에서 모두 꺼냄 (await 없음)"""
        jobs = []
        while not self._ready.empty():
            jobs.append(self._ready.get_nowait())
            self._ready.task_done()
        return jobs

    async def _release_jobs(self, jobs: list[Job]) -> None:
        """클레임 잡의 lock 반환 (잡은 queued로 남아 다음 폴링 대상이 됨)"""
        for job in jobs:
            try:
                await self._store.release_lock(job, self._owner)
            except Exception as e:
                logger.error(f"Failed to release lock for job {job.id}: {e}")
        if jobs:
            logger.info(f"Released {len(jobs)} claimed jobs back to the queue")

    @property
    def reporter(self) -> ErrorReporter:
        return self._reporter or get_error_reporter()

    @property
    def owner(self) -> str:
        """advisory lock 소유자 ID"""
        return self._owner

    @property
    def is_running(self) -> bool:
        """실행 중 여부"""
        return self._running and not self._stopping

    @property
    def running_job_count(self) -> int:
        """실행 중인 잡 수"""
        return len(self._active)
