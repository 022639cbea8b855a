"""Relay connector: SSH session over an (optionally TLS-wrapped) TCP socket.

Used for the preflight from the CLI host. Sequence: TCP dial, TLS handshake
(ssh+tls only), SSH handshake with relay host key check, public key auth,
then the ``hello`` exec request. The host key seen here is pinned for the
agent on the machine.
"""

import asyncio
import base64
import hashlib
import json
import logging
import socket
import ssl

import paramiko

from previewdock.errors import AuthenticationError, ConfigurationError, TunnelLostError, UnreachableError
from previewdock.tunnel.client import RelayHello

logger = logging.getLogger(__name__)

DEFAULT_DIAL_TIMEOUT = 10


def _normalize_fingerprint(value: str) -> str:
    return value.replace(":", "").strip().lower()


def host_key_fingerprint(key) -> str:
    """OpenSSH-style ``SHA256:<base64>`` fingerprint of a paramiko key."""
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode().rstrip("=")


def build_ssl_context(insecure_skip_verify=False, ca_file=None):
    """TLS context for the relay. Insecure mode is always logged loudly."""
    if insecure_skip_verify:
        logger.warning("WARNING: relay TLS certificate and hostname verification is DISABLED (insecure mode)")
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context
    return ssl.create_default_context(cafile=ca_file)


class SshRelayConnection:
    """An authenticated SSH transport to the relay."""

    def __init__(self, transport: paramiko.Transport):
        self._transport = transport

    @property
    def host_key(self) -> str:
        """The relay host key as ``<type> <base64>``, for a known_hosts entry."""
        key = self._transport.get_remote_server_key()
        return f"{key.get_name()} {key.get_base64()}"

    async def hello(self) -> RelayHello:
        return await asyncio.to_thread(self._hello)

    def _hello(self):
        try:
            channel = self._transport.open_session(timeout=DEFAULT_DIAL_TIMEOUT)
            channel.exec_command("hello")
            with channel.makefile("rb") as f:
                raw = f.read()
            status = channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise UnreachableError(f"Relay hello failed: {e}") from e
        if status != 0:
            raise TunnelLostError(f"Relay rejected hello (exit {status})")
        try:
            body = json.loads(raw)
            return RelayHello(client_id=body["clientId"], base_url=body["baseUrl"])
        except (ValueError, KeyError) as e:
            raise TunnelLostError(f"Malformed relay hello response: {raw[:200]!r}") from e

    async def close(self):
        await asyncio.to_thread(self._transport.close)


class SshRelayConnector:
    """Dials the relay and authenticates with the environment's key pair.

    Args:
        relay: parsed RelayAddress.
        key_path: private key file used for SSH public key auth.
        username: SSH user name presented to the relay.
        insecure_skip_verify: skip TLS certificate and hostname checks.
        ca_file: CA bundle the relay certificate must chain to.
        pinned_cert_sha256: expected SHA-256 fingerprint of the relay certificate (ssh+tls only).
        host_key_sha256: expected relay SSH host key fingerprint (``SHA256:...``).
    """

    def __init__(
        self,
        relay,
        key_path,
        username="previewdock",
        insecure_skip_verify=False,
        ca_file=None,
        pinned_cert_sha256=None,
        host_key_sha256=None,
        dial_timeout=DEFAULT_DIAL_TIMEOUT,
    ):
        if pinned_cert_sha256 and not relay.tls:
            raise ConfigurationError(f"A pinned TLS certificate needs an ssh+tls:// relay, got {relay}")
        self.relay = relay
        self.key_path = key_path
        self.username = username
        self.insecure_skip_verify = insecure_skip_verify
        self.ca_file = ca_file
        self.pinned_cert_sha256 = pinned_cert_sha256
        self.host_key_sha256 = host_key_sha256
        self.dial_timeout = dial_timeout

    @property
    def verifies_relay(self) -> bool:
        """True when something other than trust-on-first-use authenticates the relay."""
        return bool(self.host_key_sha256) or (self.relay.tls and not self.insecure_skip_verify)

    async def connect(self) -> SshRelayConnection:
        return await asyncio.to_thread(self._connect)

    def _load_key(self):
        try:
            return paramiko.PKey.from_path(self.key_path)
        except (OSError, paramiko.SSHException) as e:
            raise ConfigurationError(f"Cannot load tunnel key '{self.key_path}': {e}") from e

    def _dial(self):
        try:
            sock = socket.create_connection((self.relay.host, self.relay.port), timeout=self.dial_timeout)
        except OSError as e:
            raise UnreachableError(f"Cannot reach relay {self.relay}: {e}") from e
        if not self.relay.tls:
            return sock

        context = build_ssl_context(self.insecure_skip_verify, self.ca_file)
        try:
            sock = context.wrap_socket(sock, server_hostname=self.relay.host)
        except ssl.SSLCertVerificationError as e:
            sock.close()
            raise AuthenticationError(f"Relay certificate rejected: {e}") from e
        except (ssl.SSLError, OSError) as e:
            sock.close()
            raise UnreachableError(f"TLS handshake with relay {self.relay} failed: {e}") from e

        if self.pinned_cert_sha256:
            actual = hashlib.sha256(sock.getpeercert(binary_form=True)).hexdigest()
            if actual != _normalize_fingerprint(self.pinned_cert_sha256):
                sock.close()
                raise AuthenticationError(f"Relay certificate fingerprint {actual} does not match the pinned one")
        return sock

    def _check_host_key(self, transport):
        actual = host_key_fingerprint(transport.get_remote_server_key())
        if self.host_key_sha256:
            expected = self.host_key_sha256.strip()
            if not expected.startswith("SHA256:"):
                expected = f"SHA256:{expected}"
            if actual != expected.rstrip("="):
                raise AuthenticationError(f"Relay host key {actual} does not match the pinned {expected}")
        elif not self.verifies_relay:
            logger.warning(
                f"WARNING: relay {self.relay} is NOT authenticated (no TLS verification, no pinned host key). "
                f"Seen host key {actual}; pin it with 'relay_host_key'."
            )

    def _connect(self):
        key = self._load_key()
        sock = self._dial()
        transport = paramiko.Transport(sock)
        try:
            transport.start_client(timeout=self.dial_timeout)
            self._check_host_key(transport)
            transport.auth_publickey(self.username, key)
        except AuthenticationError:
            transport.close()
            raise
        except paramiko.AuthenticationException as e:
            transport.close()
            raise AuthenticationError(f"Relay rejected key '{self.key_path}': {e}") from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            transport.close()
            raise UnreachableError(f"SSH handshake with relay {self.relay} failed: {e}") from e
        logger.info(f"Connected to relay {self.relay}")
        return SshRelayConnection(transport)
