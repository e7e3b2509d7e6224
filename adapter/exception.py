"""Adapter 예외"""


class AdapterError(Exception):
    """Adapter 기본 예외"""
    pass


class UnsupportedExecutionModeError(AdapterError):
    """알 수 없는 실행 모드"""
    def __init__(self, mode: str):
        super().__init__(f"Unsupported execution mode: {mode}")
        self.mode = mode
