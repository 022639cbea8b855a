"""Tunnel client: one relay session per environment, one binding per service port.

The session itself is held by the tunnel agent on the provisioned machine.
This side runs a preflight against the relay (identity checks, key auth,
``hello``), installs and starts the agent through the execution router, and
watches the agent's state.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Protocol

from previewdock.errors import AuthenticationError, ConfigurationError, PreviewdockError, TunnelLostError
from previewdock.retry import RetryConfig, retry_transient, with_deadline
from previewdock.tunnel.agent import CONNECTED, LOST, REJECTED, STOPPED, AgentSettings, Forward, TunnelAgent
from previewdock.tunnel.urls import RelayAddress, tunnel_name, tunnel_url

logger = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TIMEOUT = 30
DEFAULT_POLL_INTERVAL = 2


@dataclass(frozen=True)
class ServicePort:
    """A declared service port. Connections go to *published* when set."""

    service: str
    port: int
    published: int | None = None

    @property
    def target_port(self) -> int:
        return self.published or self.port


@dataclass(frozen=True)
class TunnelBinding:
    """(service, container port) mapped to a public URL for the session's lifetime."""

    service: str
    port: int
    name: str
    url: str


@dataclass(frozen=True)
class RelayHello:
    client_id: str
    base_url: str


@dataclass(frozen=True)
class RelaySettings:
    """How the agent on the machine reaches and authenticates to the relay."""

    address: RelayAddress
    username: str
    key_path: str
    tls_verify: bool = True
    ca_file: str | None = None


class RelayConnection(Protocol):
    host_key: str

    async def hello(self) -> RelayHello: ...

    async def close(self) -> None: ...


class RelayConnector(Protocol):
    async def connect(self) -> RelayConnection: ...


def _read_file(path, what):
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise ConfigurationError(f"Cannot read {what} '{path}': {e}") from e


class TunnelSession:
    """An open relay session held by the agent on the machine.

    ``hold()`` watches it, ``close()`` stops the agent. Neither is needed to
    keep the URLs alive: the session lasts until the environment is torn down.
    """

    def __init__(self, client, agent, bindings):
        self._client = client
        self._agent = agent
        self.bindings: list[TunnelBinding] = bindings
        self._closing = False

    @property
    def urls(self) -> dict[tuple[str, int], str]:
        return {(b.service, b.port): b.url for b in self.bindings}

    @property
    def closed(self) -> bool:
        return self._closing

    async def status(self) -> str:
        return await retry_transient(self._agent.status, "tunnel status", config=self._client.reconnect)

    async def hold(self):
        """Block while the agent holds the session.

        Returns when the agent is stopped (``close()`` or ``down`` from any
        process).

        Raises:
            TunnelLostError: the agent exhausted its reconnect attempts. The
                environment stays provisioned.
            AuthenticationError: the relay rejected the key or its host key
                changed; the agent does not retry these.
        """
        env_id = self._client.env_id
        last = CONNECTED
        while not self._closing:
            state = await self.status()
            if state == STOPPED:
                return
            if state == LOST:
                raise TunnelLostError(
                    f"Tunnel for '{env_id}' lost after {self._client.reconnect.max_attempts} reconnect attempts: "
                    f"{await self._agent.log_tail()}"
                )
            if state == REJECTED:
                raise AuthenticationError(f"Relay rejected the tunnel for '{env_id}': {await self._agent.log_tail()}")
            if state != last:
                if state == CONNECTED:
                    logger.info(f"Tunnel for '{env_id}' reconnected.")
                else:
                    logger.warning(f"Tunnel for '{env_id}' disconnected, reconnecting...")
                last = state
            await asyncio.sleep(self._client.poll_interval)

    async def close(self):
        """Stop the agent. Safe to call more than once."""
        if self._closing:
            return
        self._closing = True
        logger.info(f"Closing tunnel for '{self._client.env_id}'...")
        await self._agent.stop()


class TunnelClient:
    """Exposes service ports of one environment's machine through the relay.

    Args:
        connector: dials and authenticates the relay for the preflight (see ssh_relay).
        router: ExecutionRouter used to control the agent on *machine*.
        machine: the environment's machine; forwards target its loopback.
        env_id: environment whose services are exposed.
        relay: RelaySettings handed to the agent.
        reconnect: backoff policy of the agent, and of status polling.
        handshake_timeout: deadline for preflight, agent start and registration.
    """

    def __init__(
        self,
        connector,
        router,
        machine,
        env_id,
        relay: RelaySettings,
        reconnect=None,
        handshake_timeout=DEFAULT_HANDSHAKE_TIMEOUT,
        poll_interval=DEFAULT_POLL_INTERVAL,
    ):
        self.connector = connector
        self.router = router
        self.machine = machine
        self.env_id = env_id
        self.relay = relay
        self.reconnect = reconnect or RetryConfig(max_attempts=5, base_delay=1.0, max_delay=30.0)
        self.handshake_timeout = handshake_timeout
        self.poll_interval = poll_interval

    async def preflight(self):
        """Dial and authenticate the relay from here. Returns (hello, relay host key)."""
        connection = await self.connector.connect()
        try:
            hello = await connection.hello()
            host_key = connection.host_key
        finally:
            await connection.close()
        logger.info(f"Relay session established (client id {hello.client_id})")
        return hello, host_key

    def agent_settings(self, services) -> AgentSettings:
        return AgentSettings(
            relay_host=self.relay.address.host,
            relay_port=self.relay.address.port,
            relay_user=self.relay.username,
            tls=self.relay.address.tls,
            tls_verify=self.relay.tls_verify,
            forwards=tuple(Forward(tunnel_name(self.env_id, sp.service, sp.port), sp.target_port) for sp in services),
            max_attempts=self.reconnect.max_attempts,
            base_delay=math.ceil(self.reconnect.base_delay),
            max_delay=math.ceil(self.reconnect.max_delay),
        )

    async def _wait_connected(self, agent):
        while True:
            state = await agent.status()
            if state == CONNECTED:
                return
            if state == REJECTED:
                raise AuthenticationError(f"Relay rejected the tunnel agent on {self.machine.provider_id}: {await agent.log_tail()}")
            if state in (LOST, STOPPED):
                raise TunnelLostError(f"Tunnel agent on {self.machine.provider_id} could not register its forwards: {await agent.log_tail()}")
            await asyncio.sleep(self.poll_interval)

    async def _establish(self, agent, services):
        hello, host_key = await self.preflight()
        key = _read_file(self.relay.key_path, "tunnel key")
        ca_bundle = _read_file(self.relay.ca_file, "CA bundle") if self.relay.ca_file else None
        await agent.install(self.agent_settings(services), key, host_key, ca_bundle)
        await agent.start()
        await self._wait_connected(agent)
        return [
            TunnelBinding(sp.service, sp.port, tunnel_name(self.env_id, sp.service, sp.port), tunnel_url(hello.base_url, self.env_id, sp.service, sp.port))
            for sp in services
        ]

    async def establish(self, services):
        """Preflight, install and start the agent, wait for registration. Returns (agent, bindings)."""
        agent = TunnelAgent(self.router, self.machine)
        try:
            bindings = await with_deadline(self._establish(agent, services), self.handshake_timeout, "tunnel handshake")
        except PreviewdockError:
            if agent.started:
                await self._abandon(agent)
            raise
        return agent, bindings

    async def _abandon(self, agent):
        try:
            await agent.stop()
        except PreviewdockError as e:
            logger.warning(f"Could not stop the tunnel agent on {self.machine.provider_id}: {e}")

    async def preview_urls(self, services) -> dict[tuple[str, int], str]:
        """URLs the bindings of *services* get, without touching the machine."""
        connection = await with_deadline(self.connector.connect(), self.handshake_timeout, "relay connect")
        try:
            hello = await with_deadline(connection.hello(), self.handshake_timeout, "relay hello")
        finally:
            await connection.close()
        return {(sp.service, sp.port): tunnel_url(hello.base_url, self.env_id, sp.service, sp.port) for sp in services}

    async def open(self, services) -> TunnelSession:
        services = list(services)
        agent, bindings = await self.establish(services)
        for b in bindings:
            logger.info(f"  {b.service}:{b.port} -> {b.url}")
        return TunnelSession(self, agent, bindings)


async def stop_tunnel(router, machine):
    """Stop the tunnel agent on *machine*, whichever process started it."""
    await TunnelAgent(router, machine).stop()
