"""Store 기본 인터페이스"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from worker.model.job import Execution, ExecutionStatus, ErrorEvent, Job, JobSpec


class Store(ABC):
    """
    Job/Execution 영속화 및 advisory lock 인터페이스

    모든 메서드는 개별적으로 원자적이어야 하며,
    여러 워커/프로세스에서 동시에 호출될 수 있습니다.
    """

    @abstractmethod
    async def create_job(self, spec: JobSpec) -> Job:
        """queued 상태의 새 잡 생성 (scheduled_at 미지정 시 현재 시각)"""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        ...

    @abstractmethod
    async def delete_job(self, job_id: str) -> bool:
        """잡 삭제 (소유한 Execution도 함께 삭제)"""
        ...

    @abstractmethod
    async def create_execution(
        self, job_id: str, not_before: datetime | None = None
    ) -> tuple[Job, Execution]:
        """
        새 시도 시작

        sequence = executions_count + 1 인 Execution을 만들고, 같은 트랜잭션에서
        잡의 executions_count 증가, performed_at 최초 기록, state=running 처리.
        created_at은 not_before(직전 시도의 finished_at)보다 항상 큼
        """
        ...

    @abstractmethod
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
        """시도 종료 기록과 잡 필드 갱신을 하나의 트랜잭션으로 처리"""
        ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> Job:
        """잡의 변경 가능한 필드 원자적 갱신"""
        ...

    @abstractmethod
    async def get_executions(self, job_id: str) -> list[Execution]:
        """잡의 Execution 목록 (created_at 순)"""
        ...

    @abstractmethod
    async def get_ready_jobs(
        self,
        limit: int,
        now: datetime | None = None,
        queues: list[str] | None = None,
    ) -> list[Job]:
        """실행 가능한 잡 목록 (priority, scheduled_at 순)"""
        ...

    @abstractmethod
    async def acquire_lock(self, job: Job, owner: str, ttl_seconds: float) -> bool:
        """(잡 ID, 동시성 키) advisory lock 획득. 다른 소유자가 보유 중이면 False"""
        ...

    @abstractmethod
    async def release_lock(self, job: Job, owner: str) -> None:
        ...

    @abstractmethod
    async def refresh_locks(self, owner: str, ttl_seconds: float) -> int:
        """owner가 보유한 모든 lock의 만료 시각 연장, 갱신된 개수 반환"""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
