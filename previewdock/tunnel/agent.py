"""Tunnel agent: the relay session process that runs on the machine itself.

The agent is a POSIX sh script driving the OpenSSH client. It is written to
the machine and controlled through the batch execution path, so it outlives
the CLI process that started it and is stopped by whichever process tears
the environment down.

Remote layout (``AGENT_DIR``)::

    agent.sh      the script below
    agent.env     relay address, forwards and backoff settings
    key           private key authenticating to the relay
    known_hosts   the relay host key, pinned during the local preflight
    ca.pem        optional CA bundle for the TLS wrapper
    status        connecting | connected | lost | rejected | stopped
    agent.log     ssh client output
"""

import base64
import logging
import shlex
from dataclasses import dataclass

from previewdock.errors import PreviewdockError
from previewdock.execution.types import BatchExecRequest
from previewdock.redact import register_secret

logger = logging.getLogger(__name__)

AGENT_DIR = "${HOME:-/tmp}/.previewdock/tunnel"
HOST_KEY_ALIAS = "previewdock-relay"
DEFAULT_EXEC_TIMEOUT = 30
LOG_TAIL_LINES = 20

# Agent states reported by ``agent.sh status``.
CONNECTING = "connecting"
CONNECTED = "connected"
LOST = "lost"
REJECTED = "rejected"
STOPPED = "stopped"

AGENT_SCRIPT = r"""#!/bin/sh
# previewdock tunnel agent. Usage: agent.sh start|stop|status|run
set -u
DIR=$(cd "$(dirname "$0")" && pwd)
. "$DIR/agent.env"
CTL="$DIR/ctl.sock"
PIDFILE="$DIR/agent.pid"
STATUS="$DIR/status"

relay_ssh() {
    if [ "$RELAY_TLS" = 1 ]; then
        verify=""
        if [ "$TLS_VERIFY" = 1 ]; then
            verify="-verify_return_error -verify_hostname $RELAY_HOST"
            [ -f "$DIR/ca.pem" ] && verify="$verify -CAfile $DIR/ca.pem"
        fi
        set -- -o "ProxyCommand=openssl s_client -quiet $verify -servername $RELAY_HOST -connect $RELAY_HOST:$RELAY_PORT" "$@"
    else
        set -- -p "$RELAY_PORT" "$@"
    fi
    ssh -i "$DIR/key" -o IdentitiesOnly=yes -o BatchMode=yes \
        -o StrictHostKeyChecking=yes -o UserKnownHostsFile="$DIR/known_hosts" -o HostKeyAlias="$HOST_KEY_ALIAS" \
        -o ServerAliveInterval=30 -o ServerAliveCountMax=3 -o ExitOnForwardFailure=yes \
        -S "$CTL" "$@" "$RELAY_USER@$RELAY_HOST"
}

run() {
    attempt=0
    delay=$BASE_DELAY
    while [ "$attempt" -lt "$MAX_ATTEMPTS" ]; do
        echo connecting > "$STATUS"
        # -f returns once every remote forward is registered
        if relay_ssh -M -f -N $FORWARDS 2>"$DIR/last_error"; then
            echo connected > "$STATUS"
            attempt=0
            delay=$BASE_DELAY
            while relay_ssh -O check >/dev/null 2>&1; do
                sleep "$CHECK_INTERVAL"
            done
            echo "$(date) relay session ended"
        else
            cat "$DIR/last_error"
            if grep -q -e "Permission denied" -e "Host key verification failed" -e "REMOTE HOST IDENTIFICATION" "$DIR/last_error"; then
                echo rejected > "$STATUS"
                exit 1
            fi
        fi
        attempt=$((attempt + 1))
        sleep "$delay"
        delay=$((delay * 2))
        [ "$delay" -gt "$MAX_DELAY" ] && delay=$MAX_DELAY
    done
    echo lost > "$STATUS"
}

stop() {
    if [ -f "$PIDFILE" ]; then
        kill "$(cat "$PIDFILE")" 2>/dev/null
        rm -f "$PIDFILE"
    fi
    if [ -S "$CTL" ]; then
        relay_ssh -O exit >/dev/null 2>&1
    fi
    echo stopped > "$STATUS"
}

case "${1:-}" in
    start)
        stop
        echo connecting > "$STATUS"
        nohup sh "$0" run >>"$DIR/agent.log" 2>&1 </dev/null &
        echo $! > "$PIDFILE"
        ;;
    stop) stop ;;
    status) if [ -f "$STATUS" ]; then cat "$STATUS"; else echo stopped; fi ;;
    run) run ;;
    *) echo "usage: $0 start|stop|status|run" >&2; exit 2 ;;
esac
"""


# docker:dind style images ship without an ssh client
ENSURE_TOOLS = (
    "if ! command -v ssh >/dev/null 2>&1 || ! command -v openssl >/dev/null 2>&1; then "
    "{ apk add --no-cache openssh-client openssl || { apt-get update -qq && apt-get install -y -qq openssh-client openssl; }; } >/dev/null 2>&1; "
    "command -v ssh >/dev/null 2>&1 || { echo \"no ssh client on the machine\" >&2; exit 1; }; "
    "fi"
)


class TunnelAgentError(PreviewdockError):
    """A control command of the tunnel agent failed on the machine."""


@dataclass(frozen=True)
class Forward:
    """One remote forward: relay name -> port on the machine's loopback."""

    name: str
    port: int
    host: str = "localhost"

    def ssh_arg(self) -> str:
        return f"{self.name}:0:{self.host}:{self.port}"


@dataclass(frozen=True)
class AgentSettings:
    """Everything the agent needs to dial and hold the relay session."""

    relay_host: str
    relay_port: int
    relay_user: str
    tls: bool
    forwards: tuple[Forward, ...]
    tls_verify: bool = True
    max_attempts: int = 5
    base_delay: int = 1
    max_delay: int = 30
    check_interval: int = 5

    def render_env(self) -> str:
        """agent.env contents, every value shell-quoted."""
        forwards = " ".join(f"-R {f.ssh_arg()}" for f in self.forwards)
        values = {
            "RELAY_HOST": self.relay_host,
            "RELAY_PORT": self.relay_port,
            "RELAY_USER": self.relay_user,
            "RELAY_TLS": int(self.tls),
            "TLS_VERIFY": int(self.tls_verify),
            "HOST_KEY_ALIAS": HOST_KEY_ALIAS,
            "FORWARDS": forwards,
            "MAX_ATTEMPTS": self.max_attempts,
            "BASE_DELAY": max(1, int(self.base_delay)),
            "MAX_DELAY": max(1, int(self.max_delay)),
            "CHECK_INTERVAL": self.check_interval,
        }
        return "".join(f"{k}={shlex.quote(str(v))}\n" for k, v in values.items())


def known_hosts_line(host_key: str) -> str:
    """known_hosts entry for the pinned relay key (``<type> <base64>``)."""
    return f"{HOST_KEY_ALIAS} {host_key}\n"


def write_files_command(files: dict[str, bytes]) -> str:
    """Shell command writing *files* (name -> content) into AGENT_DIR, mode 600."""
    parts = ["umask 077", f'mkdir -p "{AGENT_DIR}"']
    for name, content in files.items():
        encoded = base64.b64encode(content).decode()
        parts.append(f"printf '%s' '{encoded}' | base64 -d > \"{AGENT_DIR}/{name}\"")
    return " && ".join(parts)


def control_command(action: str) -> str:
    """``agent.sh <action>``; a machine without an agent reports 'stopped'."""
    return f'if [ -f "{AGENT_DIR}/agent.sh" ]; then sh "{AGENT_DIR}/agent.sh" {action}; else echo {STOPPED}; fi'


class TunnelAgent:
    """Controls the agent on one machine through the execution router."""

    def __init__(self, router, machine, timeout=DEFAULT_EXEC_TIMEOUT):
        self.router = router
        self.machine = machine
        self.timeout = timeout
        self.started = False

    async def _run(self, command, what):
        result = await self.router.run(BatchExecRequest(self.machine, command, timeout=self.timeout))
        if result.exit_code != 0:
            stderr = result.output.stderr.decode(errors="replace").strip()
            raise TunnelAgentError(f"Tunnel agent {what} failed on {self.machine.provider_id} (exit {result.exit_code}): {stderr}")
        return result.output.text.strip()

    async def install(self, settings: AgentSettings, key: bytes, host_key: str, ca_bundle: bytes | None = None):
        files = {
            "agent.sh": AGENT_SCRIPT.encode(),
            "agent.env": settings.render_env().encode(),
            "key": key,
            "known_hosts": known_hosts_line(host_key).encode(),
        }
        if ca_bundle is not None:
            files["ca.pem"] = ca_bundle
        register_secret(base64.b64encode(key).decode())
        await self._run(f"{ENSURE_TOOLS}; {write_files_command(files)}", "install")
        logger.debug(f"Tunnel agent installed on {self.machine.provider_id}")

    async def start(self):
        self.started = True
        await self._run(control_command("start"), "start")

    async def stop(self):
        await self._run(control_command("stop"), "stop")
        logger.info(f"Tunnel agent stopped on {self.machine.provider_id}")

    async def status(self) -> str:
        output = await self._run(control_command("status"), "status")
        return output.splitlines()[-1] if output else STOPPED

    async def log_tail(self) -> str:
        command = f'tail -n {LOG_TAIL_LINES} "{AGENT_DIR}/agent.log" 2>/dev/null; true'
        return await self._run(command, "log")
