"""Exec command: run a command on an environment's machine."""

import asyncio
import logging
import sys
import threading

from previewdock.commands.common import CommandContext, add_common_args, add_env_args, load_project, resolve_env_id
from previewdock.execution.types import BatchResult, exec_request

logger = logging.getLogger(__name__)

STDIN_CHUNK = 64 * 1024


def stdin_stream(source=None):
    """Async iterator over chunks of *source* (default: this process's stdin).

    Reads happen on a daemon thread so a blocked read never holds up exit.
    """
    source = source or sys.stdin.buffer
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def _reader():
        while True:
            chunk = source.read1(STDIN_CHUNK) if hasattr(source, "read1") else source.read(STDIN_CHUNK)
            try:
                loop.call_soon_threadsafe(queue.put_nowait, chunk)
            except RuntimeError:
                return  # loop closed
            if not chunk:
                return

    threading.Thread(target=_reader, daemon=True).start()

    async def _chunks():
        while True:
            chunk = await queue.get()
            if not chunk:
                return
            yield chunk

    return _chunks()


def handle_exec(args):
    """Handle the exec command. Exits with the remote command's exit code."""
    sys.exit(asyncio.run(_handle_exec(args)))


async def _handle_exec(args):
    ctx = CommandContext.from_args(args)
    try:
        env_id = await resolve_env_id(ctx, args, load_project(args))
        machine = await ctx.driver.get_machine(env_id)
        command = " ".join(args.command)

        request = exec_request(
            machine,
            command,
            stdin=None if args.batch else stdin_stream(),
            stdout=sys.stdout.buffer,
            stderr=sys.stderr.buffer,
            timeout=args.timeout,
        )
        result = await ctx.router.run(request)
        if isinstance(result, BatchResult):
            sys.stdout.buffer.write(result.output.stdout)
            sys.stderr.buffer.write(result.output.stderr)
            sys.stdout.flush()
            sys.stderr.flush()
        return result.exit_code
    finally:
        await ctx.close()


def register_exec_command(subparsers):
    """Register the exec subcommand."""
    parser = subparsers.add_parser("exec", help="Run a command on an environment's machine")
    add_common_args(parser)
    add_env_args(parser)
    parser.add_argument(
        "--batch",
        action="store_true",
        help="Do not attach stdin; buffer the output and print it when the command ends",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Overall deadline in seconds")
    parser.add_argument("command", nargs="+", help="Command to run (use -- before options of the command)")
    parser.set_defaults(func=handle_exec)
