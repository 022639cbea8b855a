"""Ls command: list machines, snapshots and key pairs."""

import asyncio

from previewdock.commands.common import OUTPUT_FORMATS, CommandContext, add_common_args, emit, format_rows
from previewdock.driver.types import ResourceKind


def selected_kinds(args):
    kinds = []
    if args.machines:
        kinds.append(ResourceKind.MACHINE)
    if args.snapshots:
        kinds.append(ResourceKind.SNAPSHOT)
    if args.key_pairs:
        kinds.append(ResourceKind.KEYPAIR)
    return kinds or None


def handle_ls(args):
    """Handle the ls command."""
    asyncio.run(_handle_ls(args))


async def _handle_ls(args):
    ctx = CommandContext.from_args(args)
    try:
        rows = await ctx.driver.listing_rows(selected_kinds(args))
        emit(format_rows(rows, args.format))
    finally:
        await ctx.close()


def register_ls_command(subparsers):
    """Register the ls subcommand."""
    parser = subparsers.add_parser("ls", help="List resources on the active backend")
    add_common_args(parser)
    parser.add_argument("--machines", action="store_true", help="Only machines")
    parser.add_argument("--snapshots", action="store_true", help="Only snapshots")
    parser.add_argument("--key-pairs", action="store_true", help="Only key pairs")
    parser.add_argument("--format", choices=OUTPUT_FORMATS, default="table", help="Output format (default: table)")
    parser.set_defaults(func=handle_ls)
