"""SSH transport: run commands on VM-style machines with the OpenSSH client."""

import logging
import re

from previewdock.errors import AuthenticationError, UnreachableError
from previewdock.execution.process import run_buffered, run_streaming

logger = logging.getLogger(__name__)

SSH_ERROR_EXIT_CODE = 255

_AUTH_PATTERNS = re.compile(r"Permission denied|Too many authentication failures|Host key verification failed")
_UNREACHABLE_PATTERNS = re.compile(
    r"Connection timed out|Connection refused|No route to host|Could not resolve hostname"
    r"|Operation timed out|Network is unreachable|Connection closed by|Connection reset by"
)


def ssh_base_args(destination, ssh_key, ssh_port, connect_timeout=None, tty=False):
    """Build base SSH arguments."""
    args = [
        "ssh",
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", "BatchMode=yes",
        "-o", "ServerAliveInterval=60",
        "-o", "ServerAliveCountMax=5",
        "-o", "LogLevel=ERROR",
    ]
    if connect_timeout:
        args += ["-o", f"ConnectTimeout={int(connect_timeout)}"]
    args.append("-tt" if tty else "-T")
    if ssh_key:
        args += ["-i", ssh_key]
    if ssh_port and ssh_port != 22:
        args += ["-p", str(ssh_port)]
    args.append(destination)
    return args


def classify_ssh_failure(returncode, stderr: bytes, destination):
    """Map an ssh client failure to the error taxonomy.

    Only exit code 255 is the client's own; anything else is the remote
    command's exit code and is returned to the caller as-is.
    """
    if returncode != SSH_ERROR_EXIT_CODE:
        return None
    text = stderr.decode(errors="replace").strip()
    if _AUTH_PATTERNS.search(text):
        return AuthenticationError(f"SSH key rejected by {destination}: {text}")
    if _UNREACHABLE_PATTERNS.search(text):
        return UnreachableError(f"Cannot reach {destination}: {text}")
    return None


class SshTransport:
    """Executes over an ``ssh`` client subprocess."""

    supports_interactive = True

    def _argv(self, params, command, dial_timeout):
        address = params.address
        key_path = getattr(params.auth, "private_key_path", None)
        return ssh_base_args(address.destination, key_path, address.port, connect_timeout=dial_timeout) + [command]

    async def run_interactive(self, params, request, dial_timeout):
        argv = self._argv(params, request.command, dial_timeout)
        logger.debug(f"ssh {params.address.destination}: {request.command}")
        rc, stderr_tail = await run_streaming(argv, request.stdin, request.stdout, request.stderr)
        error = classify_ssh_failure(rc, stderr_tail, params.address.destination)
        if error is not None:
            raise error
        return rc

    async def run_batch(self, params, request, dial_timeout):
        argv = self._argv(params, request.command, dial_timeout)
        logger.debug(f"ssh {params.address.destination}: {request.command}")
        rc, stdout, stderr = await run_buffered(argv, request.max_output_bytes)
        error = classify_ssh_failure(rc, stderr, params.address.destination)
        if error is not None:
            raise error
        return rc, stdout, stderr
