"""Relay addresses and deterministic public tunnel URLs."""

import hashlib
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

from previewdock.errors import ConfigurationError

DEFAULT_PORTS = {"ssh+tls": 443, "ssh": 22}
MAX_DNS_LABEL = 63


@dataclass(frozen=True)
class RelayAddress:
    scheme: str
    host: str
    port: int

    @property
    def tls(self) -> bool:
        return self.scheme == "ssh+tls"

    def __str__(self):
        return f"{self.scheme}://{self.host}:{self.port}"


def parse_relay_url(url: str) -> RelayAddress:
    """Parse ``ssh+tls://host[:port]`` or ``ssh://host[:port]``."""
    parts = urlsplit(url)
    if parts.scheme not in DEFAULT_PORTS:
        raise ConfigurationError(f"Unsupported relay URL '{url}': scheme must be ssh+tls:// or ssh://")
    if not parts.hostname:
        raise ConfigurationError(f"Relay URL '{url}' has no host")
    try:
        port = parts.port or DEFAULT_PORTS[parts.scheme]
    except ValueError as e:
        raise ConfigurationError(f"Relay URL '{url}' has an invalid port") from e
    return RelayAddress(scheme=parts.scheme, host=parts.hostname, port=port)


def tunnel_name(env_id: str, service: str, port: int) -> str:
    """DNS label identifying one (environment, service, port) binding."""
    raw = f"{service}-{port}-{env_id}".lower()
    label = re.sub(r"[^a-z0-9-]+", "-", raw).strip("-")
    if len(label) <= MAX_DNS_LABEL:
        return label
    digest = hashlib.sha1(raw.encode()).hexdigest()[:8]
    return f"{label[: MAX_DNS_LABEL - 9].rstrip('-')}-{digest}"


def tunnel_url(base_url: str, env_id: str, service: str, port: int) -> str:
    """Public URL for a binding: the tunnel name prepended to the relay base host."""
    parts = urlsplit(base_url)
    scheme = parts.scheme or "https"
    netloc = parts.netloc or parts.path
    return f"{scheme}://{tunnel_name(env_id, service, port)}.{netloc}/"
