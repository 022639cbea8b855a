"""Execution router: interactive vs. batch execution on provisioned machines.

The request variant decides the path. An InteractiveExecRequest streams
through the transport and yields only an exit code; a BatchExecRequest is
buffered and yields exit code plus output.
"""

import logging

from previewdock.driver.types import LocalAddress, PodAddress, SshAddress
from previewdock.errors import ConfigurationError
from previewdock.execution.kubectl import KubectlTransport
from previewdock.execution.local import LocalTransport
from previewdock.execution.ssh import SshTransport
from previewdock.execution.types import (
    BatchExecRequest,
    BatchResult,
    InteractiveExecRequest,
    InteractiveResult,
    ProcessOutput,
)
from previewdock.retry import with_deadline

logger = logging.getLogger(__name__)

DEFAULT_DIAL_TIMEOUT = 10


def default_transports():
    return {
        SshAddress: SshTransport(),
        PodAddress: KubectlTransport(),
        LocalAddress: LocalTransport(),
    }


class ExecutionRouter:
    """Runs commands on machines of the driver's active backend.

    Args:
        driver: MachineDriver (or adapter) providing ``connection_params``.
        transports: mapping of address type to transport.
        dial_timeout: seconds allowed to establish the connection.
    """

    def __init__(self, driver, transports=None, dial_timeout=DEFAULT_DIAL_TIMEOUT):
        self.driver = driver
        self.transports = transports if transports is not None else default_transports()
        self.dial_timeout = dial_timeout

    def _transport_for(self, params):
        transport = self.transports.get(type(params.address))
        if transport is None:
            raise ConfigurationError(f"No transport for {type(params.address).__name__}")
        return transport

    async def run(self, request):
        """Dispatch on the request variant."""
        if isinstance(request, InteractiveExecRequest):
            return await self.run_interactive(request)
        if isinstance(request, BatchExecRequest):
            return await self.run_batch(request)
        raise TypeError(f"Unknown execution request: {type(request).__name__}")

    async def run_interactive(self, request: InteractiveExecRequest) -> InteractiveResult:
        params = self.driver.connection_params(request.machine)
        transport = self._transport_for(params)
        accepts = getattr(transport, "accepts_interactive", None)
        if not transport.supports_interactive or (accepts is not None and not accepts(params)):
            raise ConfigurationError(f"Backend '{self._backend_name()}' only supports batch execution; input streams are not accepted")
        rc = await with_deadline(
            transport.run_interactive(params, request, self.dial_timeout),
            request.timeout,
            f"exec on {request.machine.provider_id}",
        )
        return InteractiveResult(exit_code=rc)

    async def run_batch(self, request: BatchExecRequest) -> BatchResult:
        params = self.driver.connection_params(request.machine)
        transport = self._transport_for(params)
        rc, stdout, stderr = await with_deadline(
            transport.run_batch(params, request, self.dial_timeout),
            request.timeout,
            f"exec on {request.machine.provider_id}",
        )
        return BatchResult(exit_code=rc, output=ProcessOutput(stdout=stdout, stderr=stderr))

    def _backend_name(self):
        return getattr(self.driver, "backend_name", None) or getattr(self.driver, "name", "?")
