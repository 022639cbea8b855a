"""Urls command: print the public URLs of an environment's services."""

import asyncio

from previewdock.commands.common import (
    CommandContext,
    add_common_args,
    add_env_args,
    add_relay_args,
    emit,
    format_rows,
    load_project,
    make_tunnel_factory,
    resolve_env_id,
)


def handle_urls(args):
    """Handle the urls command."""
    asyncio.run(_handle_urls(args))


async def _handle_urls(args):
    ctx = CommandContext.from_args(args)
    try:
        project = load_project(args, required=True)
        env_id = await resolve_env_id(ctx, args, project)
        machine = await ctx.driver.get_machine(env_id)
        client = make_tunnel_factory(ctx, env_id)(machine)
        urls = await client.preview_urls(project.services)
        rows = [{"service": s, "port": p, "url": url} for (s, p), url in urls.items()]
        emit(format_rows(rows, args.format, columns=("service", "port", "url")))
    finally:
        await ctx.close()


def register_urls_command(subparsers):
    """Register the urls subcommand."""
    parser = subparsers.add_parser("urls", help="Show the public URLs of an environment's services")
    add_common_args(parser)
    add_env_args(parser)
    add_relay_args(parser)
    parser.add_argument("--format", choices=("table", "json", "yaml"), default="table", help="Output format")
    parser.set_defaults(func=handle_urls)
