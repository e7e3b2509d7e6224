from adapter.model.adapter import AdapterConfig, ExecutionMode

__all__ = ["AdapterConfig", "ExecutionMode"]
