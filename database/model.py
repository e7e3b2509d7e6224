"""
데이터베이스 설정 모델 (config/database.yaml)
"""

from pydantic import BaseModel, Field


class PoolSettings(BaseModel):
    """커넥션풀 설정"""
    pool_size: int = Field(default=5, ge=1)
    pool_timeout: float = Field(default=30.0, gt=0)


class SqliteSettings(BaseModel):
    """SQLite PRAGMA 설정"""
    busy_timeout: int = 5000
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"
    foreign_keys: bool = True


class DatabaseConfig(BaseModel):
    """Store DB 설정"""
    name: str = "default"
    path: str = "./data/jobs.db"
    pool: PoolSettings = Field(default_factory=PoolSettings)
    options: SqliteSettings = Field(default_factory=SqliteSettings)
