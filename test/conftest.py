"""
공통 테스트 fixture

- store: tmp_path의 SQLite 파일을 사용하는 SQLiteStore
- reported_errors: 프로세스 전역 Error Reporter에 전달된 에러 목록
- wait_until: 조건이 참이 될 때까지 비동기 대기
"""

import asyncio
import logging
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# 프로젝트 루트 경로 추가
sys.path.insert(0, str(Path(__file__).parent.parent))

from database.model import DatabaseConfig, PoolSettings
from database.sqlite3 import SQLiteStore
from worker.reporter import configure_error_reporter, reset_error_reporter

logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logging.getLogger('aiosqlite').setLevel(logging.WARNING)


@pytest.fixture
def db_config(tmp_path):
    """테스트용 DB 설정 (테스트마다 새 파일)"""
    return DatabaseConfig(
        name="default",
        path=str(tmp_path / "jobs.db"),
        pool=PoolSettings(pool_size=5, pool_timeout=10.0),
    )


@pytest_asyncio.fixture
async def store(db_config):
    """SQLiteStore 인스턴스"""
    store = await SQLiteStore.create(db_config)
    yield store
    await store.close()


@pytest.fixture
def reported_errors():
    """Error Reporter 호출 기록"""
    errors = []
    configure_error_reporter(errors.append)
    yield errors
    reset_error_reporter()


@pytest.fixture
def wait_until():
    """조건 함수가 True를 반환할 때까지 대기 (timeout 초과 시 실패)"""
    async def _wait_until(condition, timeout: float = 10.0, interval: float = 0.02):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = condition()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            if loop.time() > deadline:
                pytest.fail(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)
    return _wait_until
