"""
Capsule(워커풀 + 폴러) 설정
"""

from pydantic import BaseModel, Field, model_validator


class CapsuleConfig(BaseModel):
    """Capsule 설정"""
    max_workers: int = Field(default=5, ge=1, description="동시 실행 워커 수")
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    ready_queue_capacity: int = Field(default=10, ge=1, description="클레임 후 대기 큐 크기")
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)
    lock_ttl_seconds: float = Field(default=300.0, gt=0, description="advisory lock 만료 시간")
    max_backoff_seconds: float = Field(default=60.0, gt=0, description="Store 에러 시 최대 대기")
    queues: list[str] | None = Field(default=None, description="폴링할 큐 이름 (None이면 전체)")

    @model_validator(mode="after")
    def check_lock_ttl(self) -> "CapsuleConfig":
        # 폴러가 주기마다 lock TTL을 갱신하므로 최소 두 주기는 버텨야 함
        if self.lock_ttl_seconds <= self.poll_interval_seconds * 2:
            raise ValueError(
                f"lock_ttl_seconds ({self.lock_ttl_seconds}) must exceed "
                f"twice poll_interval_seconds ({self.poll_interval_seconds})"
            )
        return self
