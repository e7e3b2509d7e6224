"""
현재 트랜잭션 연결 컨텍스트

contextvars로 태스크별 활성 트랜잭션을 추적합니다.
asyncio 태스크는 생성 시점의 컨텍스트를 복사하므로 워커 간에 공유되지 않습니다.
"""

from contextvars import ContextVar, Token
from typing import Any

_current: ContextVar[dict[str, Any]] = ContextVar("database_connections", default={})


def set_connection(name: str, ctx: Any) -> Token:
    """DB 이름에 트랜잭션 컨텍스트 바인딩"""
    connections = dict(_current.get())
    connections[name] = ctx
    return _current.set(connections)


def clear_connection(token: Token) -> None:
    """set_connection 이전 상태로 복원"""
    _current.reset(token)


def get_connection(name: str = "default", optional: bool = False) -> Any:
    """
    현재 태스크의 활성 트랜잭션 컨텍스트 반환

    Args:
        name: DB 이름
        optional: True면 활성 트랜잭션이 없을 때 None 반환

    Raises:
        RuntimeError: 활성 트랜잭션이 없는 경우 (optional=False)
    """
    ctx = _current.get().get(name)
    if ctx is None and not optional:
        raise RuntimeError(f"No active transaction for database '{name}'")
    return ctx
