"""
JSON 구조화 로깅 설정

잡 실행 중 남긴 로그에는 job_id / job_name / attempt 필드가 자동으로 붙습니다.

사용 예시:
    setup_logging(level="INFO", json_format=True)

    with job_log_context(job_id=job.id, job_name=job.job_name):
        logger.info("Starting job execution")
        # {"message": "Starting job execution", "job_id": "...", "job_name": "...", ...}
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Iterator

from pythonjsonlogger.json import JsonFormatter

_job_context: ContextVar[dict[str, Any]] = ContextVar("job_log_context", default={})


@contextmanager
def job_log_context(**fields: Any) -> Iterator[None]:
    """블록 안에서 남긴 로그 레코드에 필드 추가 (중첩 시 병합)"""
    token = _job_context.set({**_job_context.get(), **fields})
    try:
        yield
    finally:
        _job_context.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_job_context.get())


class JobContextFilter(logging.Filter):
    """현재 태스크의 잡 컨텍스트를 LogRecord 속성으로 복사"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _job_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class CustomJsonFormatter(JsonFormatter):
    """JSON 로그 포매터 (extra 필드와 잡 컨텍스트는 그대로 출력)"""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record['timestamp'] = self.formatTime(record)
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        if 'message' not in log_record:
            log_record['message'] = record.getMessage()


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: str | None = None
) -> None:
    """
    루트 로거 설정

    Args:
        level: 로그 레벨 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: False면 텍스트 포맷 (잡 컨텍스트는 생략)
        log_file: 로그 파일 경로 (None이면 stdout만 사용)
    """
    if json_format:
        formatter = CustomJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s')
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    context_filter = JobContextFilter()
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(context_filter)

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True
    )

    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('aiosqlite').setLevel(logging.WARNING)
