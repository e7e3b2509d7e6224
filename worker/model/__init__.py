"""
Worker 모델 - Job/Execution 엔티티 및 설정
"""

from worker.model.job import (
    JobState,
    ExecutionStatus,
    ErrorEvent,
    JobSpec,
    Job,
    Execution,
)
from worker.model.capsule import CapsuleConfig

__all__ = [
    'JobState',
    'ExecutionStatus',
    'ErrorEvent',
    'JobSpec',
    'Job',
    'Execution',
    'CapsuleConfig',
]
