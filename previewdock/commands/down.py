"""Down command: delete an environment's machines."""

import asyncio
import logging

from previewdock.commands.common import CommandContext, add_common_args, add_env_args, load_project, resolve_env_id
from previewdock.environment import down
from previewdock.errors import PartialDeletionError

logger = logging.getLogger(__name__)


def handle_down(args):
    """Handle the down command."""
    asyncio.run(_handle_down(args))


async def _handle_down(args):
    ctx = CommandContext.from_args(args)
    try:
        env_id = await resolve_env_id(ctx, args, load_project(args))
        logger.info(f"Tearing down environment '{env_id}' (backend: {ctx.driver.backend_name})...")
        report = await down(
            ctx.driver,
            env_id,
            router=ctx.router,
            force=args.force,
            wait=args.wait,
            concurrency=ctx.config["concurrency"],
            telemetry=ctx.telemetry,
        )
        if not report.ok:
            raise PartialDeletionError(report)
        logger.info(f"Deleted {report.affected} resource(s).")
    finally:
        await ctx.close()


def register_down_command(subparsers):
    """Register the down subcommand."""
    parser = subparsers.add_parser("down", help="Delete an environment's machines")
    add_common_args(parser)
    add_env_args(parser)
    parser.add_argument("--force", action="store_true", help="Succeed when the environment or a resource is already gone")
    parser.add_argument("--wait", action="store_true", help="Block until the provider confirms deletion")
    parser.set_defaults(func=handle_down)
