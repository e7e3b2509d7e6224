"""
Worker 관련 예외 클래스 정의
"""


class WorkerError(Exception):
    """Worker 기본 예외"""
    pass


class JobNotFoundError(WorkerError):
    """등록되지 않은 잡 타입"""
    def __init__(self, name: str):
        self.name = name
        self.message = f"Job type not found: {name}"
        super().__init__(self.message)


class HandlerConfigurationError(WorkerError):
    """잘못된 에러 핸들러 선언 (잡 타입 정의 시점에 발생)"""
    def __init__(self, job_name: str, message: str):
        self.job_name = job_name
        self.message = f"Invalid handler registry for '{job_name}': {message}"
        super().__init__(self.message)


class CapsuleError(WorkerError):
    """Capsule 기본 예외"""
    pass
