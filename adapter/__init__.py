"""Adapter 모듈 - 잡 enqueue 진입점"""

from adapter.main import Adapter
from adapter.model.adapter import AdapterConfig, ExecutionMode

__all__ = [
    "Adapter",
    "AdapterConfig",
    "ExecutionMode",
]
