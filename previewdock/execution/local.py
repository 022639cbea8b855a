"""In-process transport for the fake backend."""

from previewdock.errors import OutputTooLargeError
from previewdock.execution.process import write_to


class LocalTransport:
    """Calls the runner carried by a LocalAddress."""

    supports_interactive = True

    def accepts_interactive(self, params) -> bool:
        return params.address.interactive

    async def run_interactive(self, params, request, dial_timeout):
        address = params.address
        return await address.runner(
            address.machine_id,
            request.command,
            request.stdin,
            lambda data: write_to(request.stdout, data),
            lambda data: write_to(request.stderr, data),
        )

    async def run_batch(self, params, request, dial_timeout):
        address = params.address
        out, err = bytearray(), bytearray()

        def _sink(buf):
            def _write(data):
                buf.extend(data)
                if len(out) + len(err) > request.max_output_bytes:
                    raise OutputTooLargeError(request.max_output_bytes)

            return _write

        rc = await address.runner(address.machine_id, request.command, None, _sink(out), _sink(err))
        return rc, bytes(out), bytes(err)
