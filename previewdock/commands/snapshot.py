"""Snapshot command: capture an environment machine's disk."""

import asyncio
import logging

from previewdock.commands.common import CommandContext, add_common_args, add_env_args, load_project, resolve_env_id

logger = logging.getLogger(__name__)


def handle_snapshot(args):
    """Handle the snapshot command."""
    asyncio.run(_handle_snapshot(args))


async def _handle_snapshot(args):
    ctx = CommandContext.from_args(args)
    try:
        env_id = await resolve_env_id(ctx, args, load_project(args))
        snapshot = await ctx.driver.snapshot(env_id, name=args.name)
        ctx.telemetry.capture("snapshot", {"backend": ctx.driver.backend_name})
        logger.info(f"Snapshot {snapshot.provider_id} created from environment '{env_id}'.")
        logger.info(f"Provision from it with: previewdock up --id {env_id} --from-snapshot {snapshot.provider_id}")
    finally:
        await ctx.close()


def register_snapshot_command(subparsers):
    """Register the snapshot subcommand."""
    parser = subparsers.add_parser("snapshot", help="Snapshot an environment's machine")
    add_common_args(parser)
    add_env_args(parser)
    parser.add_argument("--name", default=None, help="Snapshot name (default: derived from the machine)")
    parser.set_defaults(func=handle_snapshot)
