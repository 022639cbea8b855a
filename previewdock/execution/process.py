"""Local subprocess plumbing shared by the ssh and kubectl transports."""

import asyncio
import logging

from previewdock.errors import ConfigurationError, OutputTooLargeError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
STDERR_TAIL_BYTES = 4096


def write_to(sink, data: bytes):
    """Write to a sink: a ``write(bytes)`` object or a plain callable."""
    if hasattr(sink, "write"):
        sink.write(data)
        flush = getattr(sink, "flush", None)
        if flush is not None:
            flush()
    else:
        sink(data)


async def _spawn(argv, stdin):
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ConfigurationError(f"'{argv[0]}' not found. Is it installed and on PATH?") from e


async def _kill(proc):
    if proc.returncode is None:
        proc.kill()
        await proc.wait()


async def run_streaming(argv, stdin, stdout, stderr):
    """Run *argv* with caller-supplied streams attached.

    Input chunks are written as they arrive and the child's input is closed
    when *stdin* is exhausted. Output is forwarded to the sinks unbuffered.
    Cancelling the caller kills the child.

    Returns:
        (returncode, stderr_tail) where stderr_tail is the last few KB of
        stderr, kept for error classification.
    """
    proc = await _spawn(argv, asyncio.subprocess.PIPE)
    tail = bytearray()

    async def _feed():
        try:
            async for chunk in stdin:
                proc.stdin.write(chunk)
                await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        finally:
            if not proc.stdin.is_closing():
                proc.stdin.close()

    async def _pump(pipe, sink, keep_tail=False):
        while True:
            chunk = await pipe.read(CHUNK_SIZE)
            if not chunk:
                return
            write_to(sink, chunk)
            if keep_tail:
                tail.extend(chunk)
                del tail[:-STDERR_TAIL_BYTES]

    feeder = asyncio.create_task(_feed())
    try:
        await asyncio.gather(_pump(proc.stdout, stdout), _pump(proc.stderr, stderr, keep_tail=True), proc.wait())
    except asyncio.CancelledError:
        logger.debug(f"Cancelled, closing channel: {argv[0]}")
        await _kill(proc)
        raise
    finally:
        feeder.cancel()
    return proc.returncode, bytes(tail)


async def run_buffered(argv, max_output_bytes):
    """Run *argv* without input and buffer stdout/stderr in memory.

    Raises:
        OutputTooLargeError: combined output exceeded *max_output_bytes*. The
            child is killed; nothing is truncated silently.

    Returns:
        (returncode, stdout, stderr)
    """
    proc = await _spawn(argv, asyncio.subprocess.DEVNULL)
    out, err = bytearray(), bytearray()

    async def _collect(pipe, buf):
        while True:
            chunk = await pipe.read(CHUNK_SIZE)
            if not chunk:
                return
            buf.extend(chunk)
            if len(out) + len(err) > max_output_bytes:
                raise OutputTooLargeError(max_output_bytes)

    try:
        await asyncio.gather(_collect(proc.stdout, out), _collect(proc.stderr, err), proc.wait())
    except (OutputTooLargeError, asyncio.CancelledError):
        await _kill(proc)
        raise
    return proc.returncode, bytes(out), bytes(err)
