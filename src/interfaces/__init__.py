from .execution_source import IExecutionSource

__all__ = ["IExecutionSource"]
