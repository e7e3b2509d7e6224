"""
에러 핸들러 선언 및 해석

잡 타입은 정의 시점에 Discard / Retry / Rescue 핸들러 목록을 가지며,
perform에서 발생한 에러는 가장 구체적인(MRO 거리가 가장 짧은) 핸들러로 처리됩니다.

사용 예시:
    @job(
        "sync_orders",
        discard_on(ValueError),
        retry_on(ConnectionError, wait=polynomially_longer, attempts=10),
        rescue_from(KeyError, lambda job, error: job.retry_job()),
    )
    class SyncOrdersJob(BaseJob):
        ...
"""

import builtins
import importlib
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Union

from worker.exception import HandlerConfigurationError

ErrorKind = Union[type[BaseException], str]


class HandlerAction(str, Enum):
    """핸들러 동작"""
    DISCARD = "discard"
    RETRY = "retry"
    RESCUE = "rescue"


@dataclass(frozen=True)
class Discard:
    """에러 발생 시 잡을 폐기"""
    kind: ErrorKind
    action = HandlerAction.DISCARD


@dataclass(frozen=True)
class Retry:
    """에러 발생 시 wait 후 재시도, 이 핸들러로 attempts회 소진하면 중단"""
    kind: ErrorKind
    wait: float | Callable[[int], float] = 3.0
    attempts: float = 5
    action = HandlerAction.RETRY

    def wait_seconds(self, attempt: int) -> float:
        """attempt: 이 핸들러가 처리한 횟수 (1부터)"""
        if callable(self.wait):
            return float(self.wait(attempt))
        return float(self.wait)


@dataclass(frozen=True)
class Rescue:
    """에러를 continuation(job, error)으로 처리. continuation은 job.retry_job()으로 재시도 요청 가능"""
    kind: ErrorKind
    continuation: Callable[..., Any]
    action = HandlerAction.RESCUE


Handler = Union[Discard, Retry, Rescue]


def discard_on(kind: ErrorKind) -> Discard:
    return Discard(kind)


def retry_on(kind: ErrorKind, wait: float | Callable[[int], float] = 3.0, attempts: float = 5) -> Retry:
    return Retry(kind, wait=wait, attempts=attempts)


def rescue_from(kind: ErrorKind, continuation: Callable[..., Any]) -> Rescue:
    return Rescue(kind, continuation)


def polynomially_longer(attempt: int) -> float:
    """재시도 대기 시간: attempt^4 + 2초"""
    return float(attempt ** 4 + 2)


def format_error(error: BaseException) -> str:
    """'<ErrorKind>: <message>' 형식"""
    return f"{type(error).__name__}: {error}"


def handler_key(kind: type[BaseException]) -> str:
    """핸들러별 소진 횟수를 저장할 키"""
    return f"{kind.__module__}.{kind.__qualname__}"


def _resolve_kind(job_name: str, kind: ErrorKind) -> type[BaseException]:
    """문자열 에러 종류를 클래스로 변환"""
    if isinstance(kind, str):
        module_name, _, attr = kind.rpartition(".")
        try:
            module = importlib.import_module(module_name) if module_name else builtins
            kind = getattr(module, attr)
        except (ImportError, AttributeError) as e:
            raise HandlerConfigurationError(job_name, f"unknown error kind '{kind}'") from e

    if not isinstance(kind, type) or not issubclass(kind, BaseException):
        raise HandlerConfigurationError(job_name, f"{kind!r} is not an exception class")
    return kind


class HandlerRegistry:
    """
    잡 타입별 핸들러 목록 (생성 후 변경 불가)

    Raises:
        HandlerConfigurationError: 알 수 없는 에러 종류, 같은 에러 종류 중복 선언,
            잘못된 attempts/wait/continuation
    """

    def __init__(self, job_name: str, handlers: tuple[Handler, ...] | list[Handler] = ()):
        self._job_name = job_name
        self._handlers = tuple(self._validate(handler) for handler in handlers)

        seen: set[type[BaseException]] = set()
        for handler in self._handlers:
            # 같은 거리의 핸들러 두 개는 어느 쪽을 고를지 정할 수 없음
            if handler.kind in seen:
                raise HandlerConfigurationError(
                    job_name, f"ambiguous handlers for {handler.kind.__name__}"
                )
            seen.add(handler.kind)

    def _validate(self, handler: Handler) -> Handler:
        if not isinstance(handler, (Discard, Retry, Rescue)):
            raise HandlerConfigurationError(self._job_name, f"unsupported handler {handler!r}")

        handler = replace(handler, kind=_resolve_kind(self._job_name, handler.kind))

        if isinstance(handler, Retry):
            attempts = handler.attempts
            if not (attempts == math.inf or (isinstance(attempts, int) and attempts >= 1)):
                raise HandlerConfigurationError(
                    self._job_name, f"attempts must be a positive int or math.inf, got {attempts!r}"
                )
            if not callable(handler.wait) and (
                not isinstance(handler.wait, (int, float)) or handler.wait < 0
            ):
                raise HandlerConfigurationError(
                    self._job_name, f"wait must be seconds >= 0 or a callable, got {handler.wait!r}"
                )
        elif isinstance(handler, Rescue) and not callable(handler.continuation):
            raise HandlerConfigurationError(self._job_name, "rescue continuation must be callable")

        return handler

    @property
    def handlers(self) -> tuple[Handler, ...]:
        return self._handlers

    def resolve(self, error: BaseException) -> Handler | None:
        """에러 타입에 가장 가까운 조상 클래스를 가진 핸들러 반환 (없으면 None)"""
        mro = type(error).__mro__
        best: Handler | None = None
        best_distance = len(mro)
        for handler in self._handlers:
            if handler.kind in mro:
                distance = mro.index(handler.kind)
                if distance < best_distance:
                    best, best_distance = handler, distance
        return best

    def __len__(self) -> int:
        return len(self._handlers)
