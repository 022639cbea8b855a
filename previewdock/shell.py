"""Shell command execution helper."""

import asyncio
import logging
import shlex

from previewdock.errors import ConfigurationError, OperationTimeoutError

logger = logging.getLogger(__name__)


async def run_shell_cmd(command, dry_run=False, timeout=600):
    """Run a command and return (returncode, stdout, stderr).

    Args:
        command: list of command arguments
        dry_run: if True, log the command instead of executing
        timeout: maximum seconds to wait for the command

    Returns:
        (returncode, stdout, stderr) tuple

    Raises:
        ConfigurationError: the executable is not installed.
        OperationTimeoutError: the command did not finish in time (it is killed).
    """
    if dry_run:
        logger.info(f"[dry-run] {shlex.join(command)}")
        return 0, "", ""

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ConfigurationError(f"'{command[0]}' not found. Is it installed and on PATH?") from e

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as e:
        logger.error(f"Command timed out after {timeout}s: {shlex.join(command)}")
        proc.kill()
        await proc.wait()
        raise OperationTimeoutError(f"'{command[0]}' did not finish within {timeout}s") from e
    stdout = stdout_bytes.decode() if stdout_bytes else ""
    stderr = stderr_bytes.decode() if stderr_bytes else ""
    return proc.returncode, stdout, stderr
