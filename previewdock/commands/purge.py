"""Purge command: delete every resource of the selected kinds."""

import asyncio
import logging

from previewdock.commands.common import CommandContext, add_common_args, emit, format_rows
from previewdock.driver.teardown import PurgeSelection, purge
from previewdock.driver.types import RESOURCE_COLUMNS
from previewdock.errors import PartialDeletionError

logger = logging.getLogger(__name__)


def handle_purge(args):
    """Handle the purge command."""
    asyncio.run(_handle_purge(args))


async def _handle_purge(args):
    ctx = CommandContext.from_args(args)
    try:
        selection = PurgeSelection(machines=args.machines, snapshots=args.snapshots, key_pairs=args.key_pairs, all=args.all)
        report = await purge(ctx.driver, selection, force=args.force, wait=args.wait, concurrency=ctx.config["concurrency"])
        ctx.telemetry.capture("purge", {"backend": ctx.driver.backend_name, "deleted": report.affected, "failed": len(report.failed)})
        rows = report.summary_rows()
        if rows:
            emit(format_rows(rows, "table", columns=RESOURCE_COLUMNS + ("result", "reason")))
        if not report.ok:
            raise PartialDeletionError(report)
    finally:
        await ctx.close()


def register_purge_command(subparsers):
    """Register the purge subcommand."""
    parser = subparsers.add_parser(
        "purge",
        help="Delete all resources of the selected kinds (no selector: nothing is deleted)",
    )
    add_common_args(parser)
    parser.add_argument("--machines", action="store_true", help="Delete all machines")
    parser.add_argument("--snapshots", action="store_true", help="Delete all snapshots")
    parser.add_argument("--key-pairs", action="store_true", help="Delete all key pairs not in use")
    parser.add_argument("--all", action="store_true", help="Shorthand for --machines --snapshots --key-pairs")
    parser.add_argument("--force", action="store_true", help="Treat resources that are already gone as deleted")
    parser.add_argument("--wait", action="store_true", help="Block until the provider confirms each deletion")
    parser.set_defaults(func=handle_purge)
