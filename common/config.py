"""
설정 로드

config/ 디렉토리의 YAML 파일을 읽어 pydantic 설정 모델로 변환합니다.

    config/database.yaml  -> database: {...}
    config/capsule.yaml   -> capsule: {...}
    config/adapter.yaml   -> adapter: {...}
    config/logging.yaml   -> logging: {...}
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from adapter.model.adapter import AdapterConfig
from database.model import DatabaseConfig
from worker.model.capsule import CapsuleConfig

DEFAULT_CONFIG_DIR = Path(__file__).parent.parent / "config"


class LoggingConfig(BaseModel):
    """setup_logging() 인자"""
    level: str = "INFO"
    json_format: bool = True
    log_file: str | None = None


class Settings(BaseModel):
    """전체 설정"""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    capsule: CapsuleConfig = Field(default_factory=CapsuleConfig)
    adapter: AdapterConfig = Field(default_factory=AdapterConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_yaml(path: str | Path) -> dict[str, Any]:
    """YAML 파일 로드 (빈 파일은 빈 dict)"""
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_settings(config_dir: str | Path | None = None) -> Settings:
    """
    설정 디렉토리의 YAML 파일을 합쳐 Settings 생성

    없는 파일은 건너뛰고 기본값을 사용합니다.
    adapter.yaml에 capsule 항목이 없으면 capsule.yaml 값을 사용합니다.
    """
    config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR

    data: dict[str, Any] = {}
    for name in ("database", "capsule", "adapter", "logging"):
        path = config_dir / f"{name}.yaml"
        if path.exists():
            data.update(load_yaml(path))

    adapter = data.get("adapter") or {}
    if "capsule" in data and "capsule" not in adapter:
        data["adapter"] = {**adapter, "capsule": data["capsule"]}

    return Settings.model_validate(data)
