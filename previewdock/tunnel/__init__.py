"""Tunnel client: expose environment service ports through the relay."""

from previewdock.tunnel.agent import AgentSettings, Forward, TunnelAgent, TunnelAgentError
from previewdock.tunnel.client import RelaySettings, ServicePort, TunnelBinding, TunnelClient, TunnelSession, stop_tunnel
from previewdock.tunnel.ssh_relay import SshRelayConnector
from previewdock.tunnel.urls import RelayAddress, parse_relay_url, tunnel_name, tunnel_url

__all__ = [
    "AgentSettings",
    "Forward",
    "TunnelAgent",
    "TunnelAgentError",
    "RelaySettings",
    "ServicePort",
    "TunnelBinding",
    "TunnelClient",
    "TunnelSession",
    "stop_tunnel",
    "SshRelayConnector",
    "RelayAddress",
    "parse_relay_url",
    "tunnel_name",
    "tunnel_url",
]
