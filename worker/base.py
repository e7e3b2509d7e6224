from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from worker.exception import JobNotFoundError
from worker.handler import Handler, HandlerRegistry

__all__ = [
    'job',
    'get_job_definition',
    'get_registered_jobs',
    'BaseJob',
    'JobDefinition',
    'JobNotFoundError',
]


@dataclass(frozen=True)
class JobDefinition:
    """잡 타입 정의 (이름, 클래스, 에러 핸들러, 타임아웃)"""
    name: str
    job_class: type["BaseJob"]
    handlers: HandlerRegistry
    timeout_seconds: float | None = None


# 잡 타입 레지스트리 (모듈 레벨)
_registry: dict[str, JobDefinition] = {}


def job(name: str, *handlers: Handler, timeout_seconds: float | None = None):
    """
    잡 타입 등록 데코레이터

    핸들러 목록은 이 시점에 검증되며, 잘못된 선언은 HandlerConfigurationError로
    즉시 실패합니다 (실행 시점에는 발생하지 않음).
    """
    registry = HandlerRegistry(name, handlers)

    def decorator(cls):
        definition = JobDefinition(
            name=name,
            job_class=cls,
            handlers=registry,
            timeout_seconds=timeout_seconds,
        )
        cls.definition = definition
        _registry[name] = definition
        return cls
    return decorator


def get_job_definition(name: str) -> JobDefinition:
    """잡 타입 정의 반환"""
    if name not in _registry:
        raise JobNotFoundError(name)
    return _registry[name]


def get_registered_jobs() -> dict[str, JobDefinition]:
    """등록된 잡 타입 목록 반환 (테스트용)"""
    return _registry.copy()


class BaseJob(ABC):
    """
    잡 기본 클래스

    실행 엔진이 시도마다 아래 속성을 설정한 뒤 perform()을 호출합니다.
        job_id: 잡 ID
        executions: 현재 시도 번호 (1부터)
    """

    definition: JobDefinition

    def __init__(self, job_id: str, params: dict[str, Any] | None = None):
        self.job_id = job_id
        self.params = params or {}
        self.executions = 0
        self._retry_requested = False
        self._retry_wait = 0.0

    @abstractmethod
    async def perform(self, params: dict[str, Any]) -> None:
        """
        잡 실행 로직

        Args:
            params: enqueue 시 전달한 파라미터

        Raises:
            Exception: 실행 실패 시 예외 발생 (등록된 핸들러로 분류됨)
        """
        pass

    def retry_job(self, wait: float = 0.0) -> None:
        """Rescue 핸들러에서 다음 시도 요청"""
        self._retry_requested = True
        self._retry_wait = wait

    def _take_retry_request(self) -> tuple[bool, float]:
        requested, wait = self._retry_requested, self._retry_wait
        self._retry_requested = False
        self._retry_wait = 0.0
        return requested, wait
