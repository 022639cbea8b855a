#!/usr/bin/env python3
"""Preview environments CLI entrypoint."""

import argparse
import logging
import sys

from previewdock.commands.down import register_down_command
from previewdock.commands.exec import register_exec_command
from previewdock.commands.ls import register_ls_command
from previewdock.commands.purge import register_purge_command
from previewdock.commands.snapshot import register_snapshot_command
from previewdock.commands.up import register_up_command
from previewdock.commands.urls import register_urls_command
from previewdock.errors import PreviewdockError
from previewdock.logging_setup import setup_cli_logging

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Ephemeral preview environments")
    subparsers = parser.add_subparsers(dest="command", required=True)

    register_up_command(subparsers)
    register_down_command(subparsers)
    register_ls_command(subparsers)
    register_purge_command(subparsers)
    register_exec_command(subparsers)
    register_snapshot_command(subparsers)
    register_urls_command(subparsers)

    args = parser.parse_args()
    setup_cli_logging(verbose=args.verbose)
    try:
        args.func(args)
    except PreviewdockError as e:
        logger.error(f"Error: {e}")
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
