"""Shared pytest fixtures for all test modules."""

import base64
import os
import re
import shlex
import subprocess
import sys

import pytest

from previewdock.backends.fake import FakeBackend
from previewdock.driver.machine_driver import MachineDriver
from previewdock.execution.router import ExecutionRouter
from previewdock.retry import RetryConfig

PROJECT_ROOT = os.path.normpath(os.path.join(os.path.dirname(__file__), ".."))

NO_DELAY_RETRY = RetryConfig(max_attempts=3, base_delay=0, max_delay=0)


@pytest.fixture(scope="session")
def project_root():
    """Absolute path to the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def run_cli(project_root, tmp_path):
    """Return a callable that invokes the previewdock CLI as a subprocess.

    HOME points at a temp dir so no user config or profile leaks in.
    """
    env = {k: v for k, v in os.environ.items() if not k.startswith("PREVIEWDOCK_")}
    env["HOME"] = str(tmp_path)

    def _run(*args, cwd=None):
        result = subprocess.run(
            [sys.executable, "-m", "previewdock.previewdock", *args],
            capture_output=True,
            text=True,
            cwd=cwd or project_root,
            env={**env, "PYTHONPATH": project_root},
        )
        return result.returncode, result.stdout, result.stderr

    return _run


# ── Unit-test fixtures ──────────────────────────────────────────────


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def driver(fake_backend):
    """MachineDriver over the fake backend with instant retries."""
    return MachineDriver(fake_backend, retry=NO_DELAY_RETRY)


@pytest.fixture
def router(driver):
    return ExecutionRouter(driver)


@pytest.fixture
def compose_file(tmp_path):
    """Write a compose file with web:8080 and api:3000 and return its path."""
    path = tmp_path / "docker-compose.yml"
    path.write_text(
        "name: proj\n"
        "services:\n"
        "  web:\n"
        "    image: nginx\n"
        "    ports:\n"
        "      - '8080:80'\n"
        "  api:\n"
        "    image: node\n"
        "    ports:\n"
        "      - 3000\n"
    )
    return str(path)


# ── Tunnel agent emulation ──────────────────────────────────────────

_WRITTEN_FILE = re.compile(r"printf '%s' '([^']*)' \| base64 -d > \"[^\"]*/([^\"/]+)\"")
_CONTROL = re.compile(r'agent\.sh" (\w+);')


class FakeTunnelAgent:
    """command_runner answering the tunnel agent's control commands.

    After ``start`` each ``status`` call reports the next entry of *states*;
    the last entry sticks.
    """

    def __init__(self, states=("connected",), log=b"ssh: connect to host relay port 443: Connection refused\n"):
        self.states = list(states)
        self.log = log
        self.files = {}
        self.state = "stopped"
        self.actions = []
        self._pending = []

    @property
    def env(self):
        return {k: shlex.split(v)[0] if v else "" for k, v in (line.split("=", 1) for line in self.files["agent.env"].decode().splitlines())}

    async def __call__(self, command, stdin, stdout, stderr):
        if "base64 -d" in command:
            for encoded, name in _WRITTEN_FILE.findall(command):
                self.files[name] = base64.b64decode(encoded)
            return 0
        if command.startswith("tail -n"):
            stdout(self.log)
            return 0
        match = _CONTROL.search(command)
        if match is None:
            stderr(b"unexpected command\n")
            return 127
        action = match.group(1)
        self.actions.append(action)
        if "agent.sh" not in self.files:
            stdout(b"stopped\n")
            return 0
        if action == "start":
            self.state = "connecting"
            self._pending = list(self.states)
        elif action == "stop":
            self.state = "stopped"
            self._pending = []
        elif action == "status" and self._pending:
            self.state = self._pending.pop(0) if len(self._pending) > 1 else self._pending[0]
        stdout(f"{self.state}\n".encode() if action == "status" else b"")
        return 0


@pytest.fixture
def tunnel_agent():
    return FakeTunnelAgent()
