"""Up command: provision an environment and expose its service ports."""

import asyncio
import logging

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
from previewdock.driver.types import SizingHints
from previewdock.environment import up
from previewdock.tunnel.client import ServicePort

logger = logging.getLogger(__name__)


def _parse_service(value):
    """'web:8080' -> ServicePort('web', 8080)."""
    service, _, port = value.rpartition(":")
    if not service or not port.isdigit():
        raise ValueError(f"Expected SERVICE:PORT, got '{value}'")
    return ServicePort(service, int(port))


def handle_up(args):
    """Handle the up command."""
    asyncio.run(_handle_up(args))


async def _handle_up(args):
    ctx = CommandContext.from_args(args)
    try:
        project = load_project(args)
        services = list(project.services) if project else []
        services += args.service or []
        env_id = await resolve_env_id(ctx, args, project)
        logger.info(f"Environment: {env_id} (backend: {ctx.driver.backend_name})")

        tunnel_factory = None if args.no_tunnel or not services else make_tunnel_factory(ctx, env_id)
        sizing = SizingHints(machine_type=args.machine_type, disk_size_gb=args.disk_size, from_snapshot=args.from_snapshot)
        result = await up(
            ctx.driver,
            ctx.router,
            env_id,
            services=services,
            tunnel_factory=tunnel_factory,
            sizing=sizing,
            setup_commands=list(ctx.config.get("setup_commands", [])) + (args.setup or []),
            timeout=ctx.config.get("provision_timeout"),
            telemetry=ctx.telemetry,
        )
        if result.urls:
            rows = [{"service": s, "port": p, "url": url} for (s, p), url in result.urls.items()]
            emit(format_rows(rows, args.format, columns=("service", "port", "url")))
        if result.session is not None and not args.detach:
            logger.info("Watching the tunnel. Ctrl+C stops watching; the tunnel runs until 'previewdock down'.")
            await result.session.hold()
    finally:
        await ctx.close()


def register_up_command(subparsers):
    """Register the up subcommand."""
    parser = subparsers.add_parser("up", help="Provision an environment and expose its services")
    add_common_args(parser)
    add_env_args(parser)
    add_relay_args(parser)
    parser.add_argument(
        "--service",
        action="append",
        type=_parse_service,
        metavar="SERVICE:PORT",
        help="Extra service port to expose (repeatable)",
    )
    parser.add_argument("--setup", action="append", metavar="COMMAND", help="Command to run on the machine after provisioning (repeatable)")
    parser.add_argument("--machine-type", default=None, help="Backend machine type hint")
    parser.add_argument("--disk-size", type=int, default=None, help="Disk size hint in GB")
    parser.add_argument("--from-snapshot", default=None, help="Boot from this snapshot id")
    parser.add_argument("--no-tunnel", action="store_true", help="Do not open the tunnel")
    parser.add_argument("--detach", action="store_true", help="Print URLs and exit instead of watching the tunnel")
    parser.add_argument("--format", choices=("table", "json", "yaml"), default="table", help="URL output format")
    parser.set_defaults(func=handle_up)
