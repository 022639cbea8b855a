"""Tests for the up/down environment lifecycle."""

from unittest import mock

import pytest

from previewdock.backends.fake import FakeBackend
from previewdock.driver.machine_driver import MachineDriver
from previewdock.driver.types import SizingHints
from previewdock.environment import SetupCommandError, down, up
from previewdock.errors import AuthenticationError, ProvisionError, ResourceNotFoundError
from previewdock.execution.router import ExecutionRouter
from previewdock.telemetry import NullTelemetryEmitter
from previewdock.tunnel.client import RelayHello, RelaySettings, ServicePort, TunnelBinding, TunnelClient
from previewdock.tunnel.urls import parse_relay_url


class RecordingTunnelClient:
    """Tunnel client double: bindings are derived without a relay."""

    def __init__(self, machine):
        self.machine = machine
        self.opened = None

    async def open(self, services):
        self.opened = list(services)
        session = mock.AsyncMock()
        session.bindings = [
            TunnelBinding(s.service, s.port, f"{s.service}-{s.port}", f"https://{s.service}-{s.port}.relay.example.com/") for s in services
        ]
        session.urls = {(b.service, b.port): b.url for b in session.bindings}
        return session


class StaticRelay:
    """Relay connector double that always authenticates."""

    host_key = "ssh-ed25519 AAAArelay"

    async def connect(self):
        return self

    async def hello(self):
        return RelayHello(client_id="c1", base_url="https://relay.example.com")

    async def close(self):
        pass


async def test_up_exposes_two_services(driver, router):
    clients = []

    def factory(machine):
        clients.append(RecordingTunnelClient(machine))
        return clients[-1]

    result = await up(driver, router, "proj-abc123", services=[ServicePort("web", 8080), ServicePort("api", 3000)], tunnel_factory=factory)

    assert result.env_id == "proj-abc123"
    assert result.machine.env_id == "proj-abc123"
    assert len(clients) == 1
    assert clients[0].machine == result.machine
    assert set(result.urls) == {("web", 8080), ("api", 3000)}
    assert len(set(result.urls.values())) == 2


async def test_up_without_tunnel(driver, router):
    result = await up(driver, router, "env-a", services=[ServicePort("web", 80)])
    assert result.urls == {}
    assert result.session is None


async def test_up_runs_setup_commands_in_order(driver, router, fake_backend):
    await up(driver, router, "env-a", setup_commands=["echo one", "echo two"])
    execs = [c[2] for c in fake_backend.calls if c[0] == "exec"]
    assert execs == ["echo one", "echo two"]


async def test_up_failing_setup_command(driver, router, fake_backend):
    with pytest.raises(SetupCommandError, match="exit 1"):
        await up(driver, router, "env-a", setup_commands=["false", "echo never"])
    assert [c[2] for c in fake_backend.calls if c[0] == "exec"] == ["false"]


async def test_up_passes_sizing(driver, router):
    result = await up(driver, router, "env-a", sizing=SizingHints(machine_type="fake.xl"))
    assert result.machine.instance_type == "fake.xl"


async def test_up_provision_failure_propagates(driver, router, fake_backend):
    fake_backend.inject_failure("provision", ProvisionError("capacity"), times=3)
    with pytest.raises(ProvisionError):
        await up(driver, router, "env-a")


async def test_up_reports_telemetry(driver, router):
    telemetry = mock.Mock(spec=NullTelemetryEmitter)
    await up(driver, router, "env-a", services=[ServicePort("web", 80)], telemetry=telemetry)
    telemetry.capture.assert_called_once_with("env up", {"backend": "fake", "services": 1})


# ── Down ──────────────────────────────────────────────────────────


async def test_down_deletes_machines(driver, fake_backend):
    await driver.provision("env-a")
    await driver.provision("env-b")

    report = await down(driver, "env-a")

    assert report.ok
    assert report.affected == 1
    assert [m.env_id for m in fake_backend.machines.values()] == ["env-b"]


async def test_down_stops_tunnel_opened_by_another_process(tunnel_agent, tmp_path):
    backend = FakeBackend(command_runner=tunnel_agent)
    key = tmp_path / "relay_key"
    key.write_bytes(b"relay-private-key")
    settings = RelaySettings(parse_relay_url("ssh+tls://relay.example.com"), "previewdock", str(key))

    # the "up" process: opens the session and exits without closing it
    up_driver = MachineDriver(backend)
    up_router = ExecutionRouter(up_driver)
    result = await up(
        up_driver,
        up_router,
        "env-a",
        services=[ServicePort("web", 8080)],
        tunnel_factory=lambda machine: TunnelClient(StaticRelay(), up_router, machine, "env-a", settings, poll_interval=0),
    )
    assert tunnel_agent.state == "connected"
    assert not result.session.closed

    # the "down" process: fresh driver and router, no session object
    down_driver = MachineDriver(backend)
    report = await down(down_driver, "env-a", router=ExecutionRouter(down_driver))

    assert report.ok
    assert tunnel_agent.state == "stopped"
    stop_index = next(i for i, c in enumerate(backend.calls) if c[0] == "exec" and "agent.sh\" stop" in c[2])
    delete_index = next(i for i, c in enumerate(backend.calls) if c[0] == "delete_resource")
    assert stop_index < delete_index


async def test_down_unreachable_tunnel_agent_fails_without_force(driver, router, fake_backend):
    await driver.provision("env-a")
    fake_backend.inject_failure("exec", AuthenticationError("permission denied"))

    with pytest.raises(AuthenticationError):
        await down(driver, "env-a", router=router)
    assert fake_backend.machines


async def test_down_unreachable_tunnel_agent_with_force(driver, router, fake_backend):
    await driver.provision("env-a")
    fake_backend.inject_failure("exec", AuthenticationError("permission denied"))

    report = await down(driver, "env-a", router=router, force=True)

    assert report.ok
    assert not fake_backend.machines


async def test_down_nonexistent_without_force(driver):
    with pytest.raises(ResourceNotFoundError, match="nope"):
        await down(driver, "nope")


async def test_down_nonexistent_with_force(driver):
    report = await down(driver, "nope", force=True)
    assert report.ok
    assert report.affected == 0


async def test_down_partial_failure_is_reported(driver, fake_backend):
    await driver.provision("env-a")
    fake_backend.add_machine(env_id="env-a")
    fake_backend.inject_failure("delete", AuthenticationError("permission denied"))

    report = await down(driver, "env-a")

    assert not report.ok
    assert report.affected == 1
    assert len(report.failed) == 1
