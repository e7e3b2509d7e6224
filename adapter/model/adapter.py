"""Adapter 관련 모델"""
from enum import Enum

from pydantic import BaseModel, Field

from worker.model.capsule import CapsuleConfig


class ExecutionMode(str, Enum):
    """enqueue된 잡의 실행 방식"""
    INLINE = "inline"  # 호출한 태스크에서 즉시 실행
    ASYNC_ALL = "async_all"  # 자체 Capsule에 바로 전달
    EXTERNAL = "external"  # 저장만 하고 외부 Capsule이 폴링


class AdapterConfig(BaseModel):
    """Adapter 설정"""
    execution_mode: ExecutionMode = ExecutionMode.EXTERNAL
    lock_ttl_seconds: float = Field(default=300.0, gt=0, description="inline 실행 시 lock 만료 시간")
    capsule: CapsuleConfig = Field(default_factory=CapsuleConfig, description="async_all용 Capsule 설정")
