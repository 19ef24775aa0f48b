from checkflow.backends.base import (
    AgentBackend,
    ExecutionError,
    ExecutionProcessError,
    ExecutionTimeoutError,
)
from checkflow.backends.command import CommandBackend
from checkflow.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "CommandBackend",
    "ExecutionError",
    "ExecutionProcessError",
    "ExecutionTimeoutError",
    "ResilientBackend",
    "RetryPolicy",
]
