"""Execution request and result variants.

Callers pick the variant explicitly: an interactive request carries an
input stream, a batch request never does. The result shape follows the
request variant only, never success or failure.
"""

from collections.abc import AsyncIterable
from dataclasses import dataclass

from previewdock.driver.types import Machine

DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024


@dataclass(frozen=True)
class InteractiveExecRequest:
    """Streamed execution with a live input channel.

    Args:
        stdin: async iterable of bytes fed to the remote process; exhausting
            it closes the remote input (EOF).
        stdout, stderr: sinks with ``write(bytes)``; written as data arrives.
        timeout: overall deadline in seconds, None for no deadline.
    """

    machine: Machine
    command: str
    stdin: AsyncIterable[bytes]
    stdout: object
    stderr: object
    timeout: float | None = None


@dataclass(frozen=True)
class BatchExecRequest:
    """Buffered execution without an input stream."""

    machine: Machine
    command: str
    timeout: float | None = None
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES


@dataclass(frozen=True)
class ProcessOutput:
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def text(self) -> str:
        return self.stdout.decode(errors="replace")


@dataclass(frozen=True)
class InteractiveResult:
    exit_code: int


@dataclass(frozen=True)
class BatchResult:
    exit_code: int
    output: ProcessOutput


def exec_request(machine, command, stdin=None, stdout=None, stderr=None, timeout=None, max_output_bytes=DEFAULT_MAX_OUTPUT_BYTES):
    """Build the request variant for a call site that has optional streams."""
    if stdin is not None:
        if stdout is None or stderr is None:
            raise ValueError("Interactive execution needs stdout and stderr sinks")
        return InteractiveExecRequest(machine, command, stdin, stdout, stderr, timeout)
    return BatchExecRequest(machine, command, timeout, max_output_bytes)
