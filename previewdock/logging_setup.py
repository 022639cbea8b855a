"""CLI logging setup: plain %(message)s output with secret redaction."""

import logging
import sys

from previewdock.redact import SecretRedactingFilter

# Chatty third-party loggers kept at WARNING unless --verbose
_QUIET_LOGGERS = ("httpx", "httpcore", "paramiko")


def setup_cli_logging(verbose=False):
    """Configure the root logger for CLI commands.

    Messages go to stdout unprefixed, so log lines read like command output.
    ``verbose`` lowers the level to DEBUG, third-party loggers included.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    # Filters on the handler also see records propagated from child loggers
    handler.addFilter(SecretRedactingFilter())
    root.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)
