"""
Job / Execution 엔티티 정의
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from common.clock import ensure_utc


class JobState(str, Enum):
    """잡 상태"""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    DISCARDED = "discarded"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.DISCARDED, JobState.ERRORED)


class ExecutionStatus(str, Enum):
    """시도(Execution)별 결과. DISCARDED는 '성공하지 못한 시도'를 의미"""
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    DISCARDED = "discarded"


class ErrorEvent(str, Enum):
    """에러 분류"""
    HANDLED = "handled"
    RETRIED = "retried"
    RETRY_STOPPED = "retry_stopped"
    DISCARDED = "discarded"
    UNHANDLED = "unhandled"


def _parse_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _utc(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_utc(value)
    return value


class JobSpec(BaseModel):
    """enqueue 요청"""
    job_name: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    queue_name: str = "default"
    priority: int = 0  # 작을수록 먼저 실행
    scheduled_at: datetime | None = None  # None이면 즉시
    concurrency_key: str | None = None

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None


class Job(BaseModel):
    """잡 엔티티 (jobs 테이블)"""
    id: str
    job_name: str
    params: dict[str, Any] = Field(default_factory=dict)
    queue_name: str = "default"
    priority: int = 0
    scheduled_at: datetime
    concurrency_key: str | None = None
    state: JobState = JobState.QUEUED
    performed_at: datetime | None = None
    finished_at: datetime | None = None
    executions_count: int = 0
    error: str | None = None
    error_event: ErrorEvent | None = None
    exception_executions: dict[str, int] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("params", "exception_executions", mode="before")
    @classmethod
    def parse_json_columns(cls, value: Any) -> Any:
        return _parse_json(value) if value is not None else {}

    @field_validator("scheduled_at", "performed_at", "finished_at", "created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: Any) -> Any:
        return _utc(value)

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    @property
    def lock_keys(self) -> list[str]:
        """advisory lock 키 목록 (잡 ID + 동시성 키)"""
        keys = [f"job:{self.id}"]
        if self.concurrency_key:
            keys.append(f"concurrency:{self.concurrency_key}")
        return keys


class Execution(BaseModel):
    """시도 엔티티 (executions 테이블)"""
    id: str
    job_id: str
    sequence: int
    status: ExecutionStatus = ExecutionStatus.RUNNING
    error: str | None = None
    error_event: ErrorEvent | None = None
    created_at: datetime
    finished_at: datetime | None = None

    @field_validator("created_at", "finished_at")
    @classmethod
    def normalize_timestamps(cls, value: Any) -> Any:
        return _utc(value)
