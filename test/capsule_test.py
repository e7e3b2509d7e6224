"""
Capsule (워커풀 + 폴러) 테스트

테스트 항목:
1. 폴링 후 실행 / 예약 시각 / priority 순서 / 큐 필터
2. ready 큐 backpressure
3. 두 Capsule 간 상호 배제 (잡 ID, concurrency key)
4. graceful shutdown (대기, timeout, 시도 사이 중단, 멱등성)
5. 엔진 결함 격리 / Store 에러 backoff / 중단된 잡 재수거
6. dispatch (ready 큐가 가득 차면 기다리지 않고 반환)

실행: python -m pytest test/capsule_test.py -v
"""

import asyncio
import sys
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio

# 프로젝트 루트 경로 추가
sys.path.insert(0, str(Path(__file__).parent.parent))

from common.clock import utcnow
from database.exception import StoreError
from database.sqlite3 import SQLiteStore
from worker.base import BaseJob, job
from worker.exception import CapsuleError
from worker.executor import Executor
from worker.handler import retry_on
from worker.main import Capsule
from worker.model import CapsuleConfig, ErrorEvent, JobSpec, JobState


class SpecificError(Exception):
    pass


# 잡 실행 기록
performed: list[str] = []
started: set[str] = set()
gates: dict[str, asyncio.Event] = {}
in_flight: dict[str, int] = {}
overlaps: list[str] = []


@pytest.fixture(autouse=True)
def reset_state():
    performed.clear()
    started.clear()
    gates.clear()
    in_flight.clear()
    overlaps.clear()


@job("capsule_test_succeed")
class SucceedJob(BaseJob):
    async def perform(self, params):
        performed.append(params.get("label", self.job_id))


@job("capsule_test_blocking")
class BlockingJob(BaseJob):
    async def perform(self, params):
        started.add(self.job_id)
        await gates[params["gate"]].wait()


@job("capsule_test_slow_failure", retry_on(SpecificError, wait=0, attempts=5))
class SlowFailureJob(BaseJob):
    async def perform(self, params):
        started.add(self.job_id)
        await asyncio.sleep(0.2)
        raise SpecificError("still failing")


@job("capsule_test_exclusive", retry_on(SpecificError, wait=0, attempts=3))
class ExclusiveJob(BaseJob):
    async def perform(self, params):
        key = params.get("key") or self.job_id
        in_flight[key] = in_flight.get(key, 0) + 1
        if in_flight[key] > 1:
            overlaps.append(key)
        try:
            await asyncio.sleep(0.01)
            if self.executions < 3:
                raise SpecificError("again")
        finally:
            in_flight[key] -= 1


@job("capsule_test_delayed_retry", retry_on(SpecificError, wait=0.1, attempts=2))
class DelayedRetryJob(BaseJob):
    async def perform(self, params):
        if self.executions == 1:
            raise SpecificError("later")


class FlakyExecutor(Executor):
    """첫 호출에서 엔진 결함을 흉내내는 Executor"""

    def __init__(self, store):
        super().__init__(store)
        self.calls = 0

    async def execute(self, job_id, **kwargs):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("engine defect")
        return await super().execute(job_id, **kwargs)


# ============================================================
# Fixtures
# ============================================================

def _config(**overrides) -> CapsuleConfig:
    values = dict(
        max_workers=2,
        poll_interval_seconds=0.05,
        ready_queue_capacity=2,
        shutdown_timeout_seconds=5,
        lock_ttl_seconds=5,
        max_backoff_seconds=1,
    )
    values.update(overrides)
    return CapsuleConfig(**values)


@pytest_asyncio.fixture
async def capsules(store):
    """테스트 종료 시 생성한 Capsule을 모두 종료"""
    created: list[Capsule] = []

    def factory(target_store=None, executor=None, **overrides) -> Capsule:
        capsule = Capsule(target_store or store, _config(**overrides), executor=executor)
        created.append(capsule)
        return capsule

    yield factory

    for capsule in created:
        await capsule.shutdown(timeout=5)


async def _lock_count(store, owner: str | None = None) -> int:
    async with store.database.transaction(readonly=True) as ctx:
        if owner is None:
            row = await ctx.fetch_one("SELECT COUNT(*) FROM advisory_locks")
        else:
            row = await ctx.fetch_one("SELECT COUNT(*) FROM advisory_locks WHERE owner = ?", (owner,))
        return row[0]


def _all_finished(store, job_ids):
    async def check():
        jobs = [await store.get_job(job_id) for job_id in job_ids]
        return all(job.is_finished for job in jobs)
    return check


async def _create_jobs(store, job_name: str, count: int) -> list[str]:
    ids = []
    for index in range(count):
        job = await store.create_job(JobSpec(job_name=job_name, params={"label": f"{job_name}-{index}"}))
        ids.append(job.id)
    return ids


# ============================================================
# Polling Tests
# ============================================================

class TestCapsulePolling:
    """폴링 및 실행"""

    @pytest.mark.asyncio
    async def test_processes_ready_jobs(self, store, capsules, wait_until, reported_errors):
        ids = await _create_jobs(store, "capsule_test_succeed", 5)
        capsule = capsules()

        await capsule.start()
        assert capsule.is_running
        await wait_until(_all_finished(store, ids))
        await wait_until(lambda: capsule.running_job_count == 0)

        for job_id in ids:
            job = await store.get_job(job_id)
            assert job.state == JobState.SUCCEEDED
            assert job.executions_count == 1
        assert sorted(performed) == sorted(f"capsule_test_succeed-{i}" for i in range(5))
        assert reported_errors == []

    @pytest.mark.asyncio
    async def test_locks_released_after_run(self, store, capsules, wait_until):
        ids = await _create_jobs(store, "capsule_test_succeed", 3)
        capsule = capsules()

        await capsule.start()
        await wait_until(_all_finished(store, ids))

        async def no_locks():
            return await _lock_count(store) == 0
        await wait_until(no_locks)

    @pytest.mark.asyncio
    async def test_future_job_waits_for_schedule(self, store, capsules, wait_until):
        job = await store.create_job(JobSpec(
            job_name="capsule_test_succeed",
            scheduled_at=utcnow() + timedelta(seconds=0.5),
        ))
        capsule = capsules()

        await capsule.start()
        await asyncio.sleep(0.2)
        assert (await store.get_job(job.id)).state == JobState.QUEUED

        await wait_until(_all_finished(store, [job.id]))
        assert (await store.get_job(job.id)).performed_at >= job.scheduled_at

    @pytest.mark.asyncio
    async def test_priority_order(self, store, capsules, wait_until):
        """priority가 작은 잡부터 실행"""
        ids = []
        for priority in (5, 1, 3, 0):
            job = await store.create_job(JobSpec(
                job_name="capsule_test_succeed",
                params={"label": f"p{priority}"},
                priority=priority,
            ))
            ids.append(job.id)
        capsule = capsules(max_workers=1, ready_queue_capacity=1)

        await capsule.start()
        await wait_until(_all_finished(store, ids))

        assert performed == ["p0", "p1", "p3", "p5"]

    @pytest.mark.asyncio
    async def test_queue_filter(self, store, capsules, wait_until):
        mail = await store.create_job(JobSpec(job_name="capsule_test_succeed", queue_name="mail"))
        other = await store.create_job(JobSpec(job_name="capsule_test_succeed", queue_name="reports"))
        capsule = capsules(queues=["mail"])

        await capsule.start()
        await wait_until(_all_finished(store, [mail.id]))
        await asyncio.sleep(0.2)

        assert (await store.get_job(other.id)).state == JobState.QUEUED

    @pytest.mark.asyncio
    async def test_backpressure(self, store, capsules, wait_until):
        """ready 큐가 가득 차면 더 이상 클레임하지 않음"""
        gates["bp"] = asyncio.Event()
        ids = []
        for _ in range(4):
            job = await store.create_job(JobSpec(job_name="capsule_test_blocking", params={"gate": "bp"}))
            ids.append(job.id)
        capsule = capsules(max_workers=1, ready_queue_capacity=1)

        await capsule.start()
        await wait_until(lambda: len(started) == 1)
        await asyncio.sleep(0.3)

        # 실행 중 1개 + ready 큐 1개
        assert len(started) == 1
        assert await _lock_count(store, capsule.owner) == 2

        gates["bp"].set()
        await wait_until(_all_finished(store, ids))
        assert len(started) == 4


# ============================================================
# Mutual Exclusion Tests
# ============================================================

class TestCapsuleMutualExclusion:
    """여러 Capsule이 같은 DB를 폴링할 때 잡은 한 번에 한 곳에서만 실행"""

    @pytest.mark.asyncio
    async def test_two_capsules_never_overlap(self, store, db_config, capsules, wait_until, reported_errors):
        ids = []
        for _ in range(8):
            job = await store.create_job(JobSpec(job_name="capsule_test_exclusive"))
            ids.append(job.id)

        other_store = await SQLiteStore.create(db_config)
        try:
            first = capsules(max_workers=3, ready_queue_capacity=3)
            second = capsules(other_store, max_workers=3, ready_queue_capacity=3)
            await first.start()
            await second.start()

            await wait_until(_all_finished(store, ids), timeout=20)
            await first.shutdown()
            await second.shutdown()
        finally:
            await other_store.close()

        assert overlaps == []
        for job_id in ids:
            job = await store.get_job(job_id)
            executions = await store.get_executions(job_id)
            assert job.state == JobState.SUCCEEDED
            assert job.executions_count == 3
            assert [e.sequence for e in executions] == [1, 2, 3]
            assert [e.error_event for e in executions] == [ErrorEvent.RETRIED, ErrorEvent.RETRIED, None]
        assert reported_errors == []

    @pytest.mark.asyncio
    async def test_concurrency_key_serializes_jobs(self, store, capsules, wait_until):
        ids = []
        for _ in range(4):
            job = await store.create_job(JobSpec(
                job_name="capsule_test_exclusive",
                params={"key": "tenant:1"},
                concurrency_key="tenant:1",
            ))
            ids.append(job.id)
        capsule = capsules(max_workers=4, ready_queue_capacity=4)

        await capsule.start()
        await wait_until(_all_finished(store, ids), timeout=20)

        assert overlaps == []


# ============================================================
# Shutdown Tests
# ============================================================

class TestCapsuleShutdown:
    """graceful shutdown"""

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, store, capsules):
        capsule = capsules()
        await capsule.start()

        await capsule.shutdown()
        await capsule.shutdown()

        assert not capsule.is_running

    @pytest.mark.asyncio
    async def test_shutdown_without_start(self, store, capsules):
        capsule = capsules()

        await capsule.shutdown()

        assert not capsule.is_running
        with pytest.raises(CapsuleError):
            await capsule.start()

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_running_job(self, store, capsules, wait_until):
        gates["shutdown"] = asyncio.Event()
        job = await store.create_job(JobSpec(job_name="capsule_test_blocking", params={"gate": "shutdown"}))
        capsule = capsules()
        await capsule.start()
        await wait_until(lambda: job.id in started)

        shutdown = asyncio.create_task(capsule.shutdown(timeout=5))
        await asyncio.sleep(0.1)
        assert not shutdown.done()

        gates["shutdown"].set()
        await shutdown

        assert (await store.get_job(job.id)).state == JobState.SUCCEEDED
        assert await _lock_count(store) == 0

    @pytest.mark.asyncio
    async def test_shutdown_timeout_returns(self, store, capsules, wait_until):
        """timeout이 지나면 실행 중인 잡을 기다리지 않고 반환"""
        gates["timeout"] = asyncio.Event()
        job = await store.create_job(JobSpec(job_name="capsule_test_blocking", params={"gate": "timeout"}))
        capsule = capsules()
        await capsule.start()
        await wait_until(lambda: job.id in started)

        loop = asyncio.get_running_loop()
        begin = loop.time()
        await capsule.shutdown(timeout=0.1)

        assert loop.time() - begin < 2
        assert (await store.get_job(job.id)).state == JobState.RUNNING
        assert capsule.running_job_count == 1

        # 남은 워커가 끝나도록 정리
        gates["timeout"].set()
        await wait_until(_all_finished(store, [job.id]))
        await wait_until(lambda: capsule.running_job_count == 0)

    @pytest.mark.asyncio
    async def test_shutdown_stops_between_attempts(self, store, capsules, wait_until, reported_errors):
        """종료 중에는 다음 시도를 시작하지 않고 잡을 queued로 되돌림"""
        job = await store.create_job(JobSpec(job_name="capsule_test_slow_failure"))
        capsule = capsules()
        await capsule.start()
        await wait_until(lambda: job.id in started)

        await capsule.shutdown(timeout=5)

        job = await store.get_job(job.id)
        assert job.state == JobState.QUEUED
        assert job.executions_count == 1
        assert job.error_event == ErrorEvent.RETRIED
        assert job.finished_at is None
        assert await _lock_count(store) == 0
        assert reported_errors == []

    @pytest.mark.asyncio
    async def test_claimed_jobs_are_released_on_shutdown(self, store, capsules, wait_until):
        gates["claimed"] = asyncio.Event()
        ids = []
        for _ in range(3):
            job = await store.create_job(JobSpec(job_name="capsule_test_blocking", params={"gate": "claimed"}))
            ids.append(job.id)
        capsule = capsules(max_workers=1, ready_queue_capacity=2)
        await capsule.start()
        await wait_until(lambda: len(started) == 1)

        async def claimed_all():
            return await _lock_count(store, capsule.owner) == 3
        await wait_until(claimed_all)

        shutdown = asyncio.create_task(capsule.shutdown(timeout=5))
        await asyncio.sleep(0.1)
        gates["claimed"].set()
        await shutdown

        states = [(await store.get_job(job_id)).state for job_id in ids]
        assert sorted(states) == sorted([JobState.SUCCEEDED, JobState.QUEUED, JobState.QUEUED])
        assert await _lock_count(store) == 0


# ============================================================
# Failure Tests
# ============================================================

class TestCapsuleFailures:
    """엔진 결함 / Store 에러 / 중단된 잡"""

    @pytest.mark.asyncio
    async def test_engine_defect_is_isolated(self, store, capsules, wait_until, reported_errors):
        """Executor 결함은 Reporter로 전달되고 워커는 계속 동작"""
        job = await store.create_job(JobSpec(job_name="capsule_test_succeed"))
        executor = FlakyExecutor(store)
        capsule = capsules(executor=executor, max_workers=1)

        await capsule.start()
        await wait_until(_all_finished(store, [job.id]))

        assert executor.calls == 2
        assert (await store.get_job(job.id)).state == JobState.SUCCEEDED
        assert len(reported_errors) == 1
        assert str(reported_errors[0]) == "engine defect"

    @pytest.mark.asyncio
    async def test_store_error_backoff(self, store, capsules, wait_until, monkeypatch, reported_errors):
        job = await store.create_job(JobSpec(job_name="capsule_test_succeed"))
        original = store.get_ready_jobs
        calls = []

        async def flaky_get_ready_jobs(limit, now=None, queues=None):
            calls.append(limit)
            if len(calls) <= 2:
                raise StoreError("database is locked")
            return await original(limit, now=now, queues=queues)

        monkeypatch.setattr(store, "get_ready_jobs", flaky_get_ready_jobs)
        capsule = capsules()

        await capsule.start()
        await wait_until(_all_finished(store, [job.id]))

        assert len(calls) >= 3
        assert capsule.is_running
        assert reported_errors == []

    @pytest.mark.asyncio
    async def test_reclaims_abandoned_job(self, store, capsules, wait_until):
        """lock이 만료된 running 잡은 다른 Capsule이 다시 실행"""
        job = await store.create_job(JobSpec(job_name="capsule_test_succeed"))
        await store.create_execution(job.id)
        assert await store.acquire_lock(job, "dead-owner", 0.2)
        capsule = capsules()

        await capsule.start()
        await wait_until(_all_finished(store, [job.id]))

        job = await store.get_job(job.id)
        assert job.state == JobState.SUCCEEDED
        assert job.executions_count == 2

    @pytest.mark.asyncio
    async def test_delayed_retry_is_polled_again(self, store, capsules, wait_until):
        job = await store.create_job(JobSpec(job_name="capsule_test_delayed_retry"))
        capsule = capsules()

        await capsule.start()
        await wait_until(_all_finished(store, [job.id]))

        job = await store.get_job(job.id)
        executions = await store.get_executions(job.id)
        assert job.state == JobState.SUCCEEDED
        assert [e.error_event for e in executions] == [ErrorEvent.RETRIED, None]
        assert executions[1].created_at - executions[0].finished_at >= timedelta(seconds=0.09)


# ============================================================
# Dispatch Tests
# ============================================================

class TestCapsuleDispatch:
    """폴러를 거치지 않는 dispatch"""

    @pytest.mark.asyncio
    async def test_dispatch_starts_capsule_and_ignores_schedule(self, store, capsules, wait_until):
        job = await store.create_job(JobSpec(
            job_name="capsule_test_succeed",
            scheduled_at=utcnow() + timedelta(hours=1),
        ))
        capsule = capsules()

        assert await capsule.dispatch(job) is True
        assert capsule.is_running
        await wait_until(_all_finished(store, [job.id]))

    @pytest.mark.asyncio
    async def test_dispatch_locked_job(self, store, capsules):
        job = await store.create_job(JobSpec(job_name="capsule_test_succeed"))
        assert await store.acquire_lock(job, "someone-else", 60)
        capsule = capsules()

        assert await capsule.dispatch(job) is False
        assert (await store.get_job(job.id)).state == JobState.QUEUED

    @pytest.mark.asyncio
    async def test_dispatch_after_shutdown(self, store, capsules):
        job = await store.create_job(JobSpec(job_name="capsule_test_succeed"))
        capsule = capsules()
        await capsule.start()
        await capsule.shutdown()

        assert await capsule.dispatch(job) is False
        assert await _lock_count(store) == 0

    @pytest.mark.asyncio
    async def test_dispatch_does_not_wait_for_free_slot(self, store, capsules, wait_until):
        """ready 큐가 가득 차면 lock을 반환하고 바로 False (잡은 폴링 대상으로 남음)"""
        gates["full"] = asyncio.Event()
        # 미래 예약 잡은 폴러가 가져가지 않으므로 dispatch 결과만 확인 가능
        first, second, third = [
            await store.create_job(JobSpec(
                job_name="capsule_test_blocking",
                params={"gate": "full"},
                scheduled_at=utcnow() + timedelta(hours=1),
            ))
            for _ in range(3)
        ]
        capsule = capsules(max_workers=1, ready_queue_capacity=1)

        assert await capsule.dispatch(first) is True
        await wait_until(lambda: first.id in started)
        assert await capsule.dispatch(second) is True

        assert await asyncio.wait_for(capsule.dispatch(third), timeout=0.5) is False
        assert await _lock_count(store, capsule.owner) == 2
        assert (await store.get_job(third.id)).state == JobState.QUEUED

        gates["full"].set()
        await wait_until(_all_finished(store, [first.id, second.id]))
