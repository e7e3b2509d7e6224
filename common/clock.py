"""
시간 유틸리티

모든 시각은 UTC aware datetime으로 다루고, DB에는 마이크로초까지 포함한
고정 폭 ISO-8601 문자열로 저장합니다 (문자열 비교 = 시간 비교).
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """naive datetime은 UTC로 간주"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_time(value: datetime | None) -> str | None:
    """datetime -> 'YYYY-MM-DD HH:MM:SS.ffffff+00:00'"""
    if value is None:
        return None
    return ensure_utc(value).isoformat(sep=" ", timespec="microseconds")


def after(previous: datetime | None, now: datetime | None = None) -> datetime:
    """previous보다 엄격히 큰 현재 시각 (시계가 멈춰 있으면 1µs 증가)"""
    now = now or utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(microseconds=1)
    return now
