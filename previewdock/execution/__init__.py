"""Execution router: interactive and batch command execution on machines."""

from previewdock.execution.router import ExecutionRouter
from previewdock.execution.types import (
    BatchExecRequest,
    BatchResult,
    InteractiveExecRequest,
    InteractiveResult,
    ProcessOutput,
    exec_request,
)

__all__ = [
    "ExecutionRouter",
    "BatchExecRequest",
    "BatchResult",
    "InteractiveExecRequest",
    "InteractiveResult",
    "ProcessOutput",
    "exec_request",
]
