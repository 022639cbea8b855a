"""kubectl transport: run commands inside environment pods."""

import asyncio
import logging
import re
from urllib.parse import urlsplit

from previewdock.errors import AuthenticationError, UnreachableError
from previewdock.execution.process import run_buffered, run_streaming

logger = logging.getLogger(__name__)

_AUTH_PATTERNS = re.compile(r"Unauthorized|You must be logged in|forbidden|Forbidden")
_UNREACHABLE_PATTERNS = re.compile(r"Unable to connect to the server|dial tcp|i/o timeout|connection refused|no such host")


def kubectl_exec_args(address, auth, command, interactive):
    """Build ``kubectl exec`` arguments for a pod address."""
    args = ["kubectl"]
    if auth.kubeconfig:
        args += ["--kubeconfig", auth.kubeconfig]
    if auth.context:
        args += ["--context", auth.context]
    args += ["-n", address.namespace, "exec"]
    if interactive:
        args.append("-i")
    args += [address.pod, "-c", address.container, "--", "sh", "-c", command]
    return args


def classify_kubectl_failure(returncode, stderr: bytes, pod):
    if returncode == 0:
        return None
    text = stderr.decode(errors="replace").strip()
    # kubectl's own failures are prefixed; remote command stderr is not
    if not (text.startswith("error:") or text.startswith("Error from server") or "Unable to connect" in text):
        return None
    if _UNREACHABLE_PATTERNS.search(text):
        return UnreachableError(f"Cannot reach the cluster for pod {pod}: {text}")
    if _AUTH_PATTERNS.search(text):
        return AuthenticationError(f"Cluster rejected credentials for pod {pod}: {text}")
    return None


async def dial(api_server, timeout):
    """Open and close a TCP connection to the API server within *timeout*."""
    if not api_server:
        return
    parts = urlsplit(api_server)
    port = parts.port or (443 if parts.scheme == "https" else 80)
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(parts.hostname, port), timeout=timeout)
    except (OSError, TimeoutError) as e:
        raise UnreachableError(f"Cannot reach Kubernetes API server {api_server}: {e}") from e
    writer.close()
    await writer.wait_closed()


class KubectlTransport:
    """Executes via ``kubectl exec`` subprocesses."""

    supports_interactive = True

    async def run_interactive(self, params, request, dial_timeout):
        await dial(params.address.api_server, dial_timeout)
        argv = kubectl_exec_args(params.address, params.auth, request.command, interactive=True)
        logger.debug(f"kubectl exec -i {params.address.pod}: {request.command}")
        rc, stderr_tail = await run_streaming(argv, request.stdin, request.stdout, request.stderr)
        error = classify_kubectl_failure(rc, stderr_tail, params.address.pod)
        if error is not None:
            raise error
        return rc

    async def run_batch(self, params, request, dial_timeout):
        await dial(params.address.api_server, dial_timeout)
        argv = kubectl_exec_args(params.address, params.auth, request.command, interactive=False)
        logger.debug(f"kubectl exec {params.address.pod}: {request.command}")
        rc, stdout, stderr = await run_buffered(argv, request.max_output_bytes)
        error = classify_kubectl_failure(rc, stderr, params.address.pod)
        if error is not None:
            raise error
        return rc, stdout, stderr
