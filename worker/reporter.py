"""
Error Reporter

처리되지 않은 에러(unhandled, retry_stopped)가 최종적으로 발생했을 때
한 번 호출되는 프로세스 전역 콜백입니다.

사용 예시:
    from worker.reporter import configure_error_reporter

    configure_error_reporter(lambda error: sentry_sdk.capture_exception(error))
"""

import logging
from typing import Callable

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[BaseException], None]


class ErrorReporter:
    """에러 콜백 래퍼 (콜백 예외는 로깅만 하고 전파하지 않음)"""

    def __init__(self, callback: ErrorCallback | None = None):
        self._callback = callback

    @property
    def callback(self) -> ErrorCallback | None:
        return self._callback

    def report(self, error: BaseException) -> None:
        """현재 태스크에서 콜백을 동기 호출"""
        if self._callback is None:
            logger.error(f"Unhandled job error: {type(error).__name__}: {error}")
            return
        try:
            self._callback(error)
        except Exception as e:
            logger.error(f"Error reporter callback failed: {e}", exc_info=True)


_reporter = ErrorReporter()


def configure_error_reporter(callback: ErrorCallback | None) -> ErrorReporter:
    """프로세스 전역 Error Reporter 설정 (Capsule 시작 전에 호출)"""
    global _reporter
    _reporter = ErrorReporter(callback)
    return _reporter


def get_error_reporter() -> ErrorReporter:
    """프로세스 전역 Error Reporter 반환"""
    return _reporter


def reset_error_reporter() -> None:
    """기본(로깅) Reporter로 복원 (테스트용)"""
    configure_error_reporter(None)
