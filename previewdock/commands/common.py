"""Shared CLI plumbing: common flags, command context, env id and tunnel wiring."""

import json
import logging
import os
import sys
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version

import yaml

from previewdock.backends import BACKENDS, create_adapter
from previewdock.compose import find_compose_file, load_compose
from previewdock.config import load_config
from previewdock.driver.envid import ProjectContext, detect_git_branch
from previewdock.driver.machine_driver import MachineDriver
from previewdock.driver.types import RESOURCE_COLUMNS, KeyAuth
from previewdock.errors import ConfigurationError
from previewdock.execution.router import ExecutionRouter
from previewdock.telemetry import create_emitter
from previewdock.tunnel.client import RelaySettings, TunnelClient
from previewdock.tunnel.ssh_relay import SshRelayConnector
from previewdock.tunnel.urls import parse_relay_url

logger = logging.getLogger(__name__)

TUNNEL_KEY_FILE = "tunnel_ed25519"
OUTPUT_FORMATS = ("table", "csv", "json", "yaml")


def package_version():
    try:
        return version("previewdock")
    except PackageNotFoundError:
        return "0.0.0.dev0"


def add_common_args(parser):
    """Flags every subcommand accepts."""
    parser.add_argument("--config", default=None, help="Config file (default: ~/.previewdock/config.yaml)")
    parser.add_argument("--backend", choices=BACKENDS, default=None, help="Backend to use (overrides config)")
    parser.add_argument("--profile-dir", default=None, help="Profile directory (default: ~/.previewdock)")
    parser.add_argument("--dry-run", action="store_true", help="Print provider commands without executing them")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")


def add_env_args(parser):
    """Flags of commands that act on one environment."""
    parser.add_argument("--id", default=None, help="Environment id (default: derived from the compose project)")
    parser.add_argument("-f", "--file", default=None, help="Compose file (default: compose.yaml / docker-compose.yml)")


def add_relay_args(parser):
    parser.add_argument("--relay", default=None, help="Relay address, ssh+tls://host[:port] or ssh://host[:port]")
    parser.add_argument(
        "--insecure-skip-verify",
        action="store_true",
        default=None,
        help="Skip TLS certificate verification of the relay (logged as a warning)",
    )


@dataclass
class CommandContext:
    config: dict
    driver: MachineDriver
    router: ExecutionRouter
    telemetry: object

    @classmethod
    def from_args(cls, args):
        """Resolve configuration and the active backend. Call inside the event loop."""
        overrides = {
            "backend": args.backend,
            "profile_dir": args.profile_dir,
            "relay": getattr(args, "relay", None),
            "insecure_skip_verify": getattr(args, "insecure_skip_verify", None),
        }
        config = load_config(args.config, overrides=overrides)
        driver = MachineDriver(create_adapter(config, dry_run=args.dry_run))
        telemetry = create_emitter(config, package_version())
        return cls(config=config, driver=driver, router=ExecutionRouter(driver), telemetry=telemetry)

    async def close(self):
        await self.telemetry.shutdown()


def load_project(args, required=False):
    """The compose project named by -f, or found in the working directory."""
    path = getattr(args, "file", None) or find_compose_file()
    if path is None:
        if required:
            raise ConfigurationError("No compose file found. Pass -f/--file.")
        return None
    return load_compose(path)


async def resolve_env_id(ctx, args, project=None):
    context = ProjectContext(
        project_name=project.name if project else None,
        branch=detect_git_branch(os.path.dirname(os.path.abspath(project.path)) if project else None),
    )
    return await ctx.driver.resolve_environment_id(getattr(args, "id", None), context)


def tunnel_key_path(config, params):
    """Key authenticating the tunnel: the machine's key pair, else the profile tunnel key."""
    if isinstance(params.auth, KeyAuth):
        return params.auth.private_key_path
    path = os.path.join(config["profile_dir"], TUNNEL_KEY_FILE)
    if not os.path.exists(path):
        raise ConfigurationError(f"Tunnel key '{path}' not found. Create it with: ssh-keygen -t ed25519 -N '' -f {path}")
    return path


def make_tunnel_factory(ctx, env_id):
    """``(machine) -> TunnelClient`` for the configured relay.

    The client preflights the relay from here and runs the session on the
    machine, so forwards target the machine's own loopback on every backend.
    """
    if not ctx.config.get("relay"):
        raise ConfigurationError("No relay configured. Set 'relay' or pass --relay.")
    relay = parse_relay_url(ctx.config["relay"])
    insecure = bool(ctx.config["insecure_skip_verify"])

    def factory(machine):
        params = ctx.driver.connection_params(machine)
        key_path = tunnel_key_path(ctx.config, params)
        connector = SshRelayConnector(
            relay,
            key_path,
            username=ctx.config["relay_username"],
            insecure_skip_verify=insecure,
            ca_file=ctx.config.get("tls_ca_file"),
            pinned_cert_sha256=ctx.config.get("tls_pinned_sha256"),
            host_key_sha256=ctx.config.get("relay_host_key"),
        )
        settings = RelaySettings(
            address=relay,
            username=ctx.config["relay_username"],
            key_path=key_path,
            tls_verify=not insecure,
            ca_file=ctx.config.get("tls_ca_file"),
        )
        return TunnelClient(connector, ctx.router, machine, env_id, settings)

    return factory


def format_rows(rows, fmt="table", columns=RESOURCE_COLUMNS):
    """Render listing rows. Every format is a projection of the same columns."""
    rows = [{c: row.get(c, "") for c in columns} for row in rows]
    if fmt == "json":
        return json.dumps(rows, indent=2)
    if fmt == "yaml":
        return yaml.safe_dump(rows, sort_keys=False)

    import pandas as pd

    df = pd.DataFrame(rows, columns=list(columns))
    if fmt == "csv":
        return df.to_csv(index=False)
    if df.empty:
        return "No resources found."
    return df.to_string(index=False)


def emit(text):
    """Write command output (not log lines) to stdout."""
    sys.stdout.write(text if text.endswith("\n") else f"{text}\n")
    sys.stdout.flush()
