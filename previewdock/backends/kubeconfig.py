"""Minimal kubeconfig reader: server, namespace and credentials of one context."""

import base64
import logging
import os
import ssl
import tempfile
from dataclasses import dataclass

import yaml

from previewdock.errors import ConfigurationError
from previewdock.redact import register_secret

logger = logging.getLogger(__name__)

DEFAULT_KUBECONFIG = "~/.kube/config"


@dataclass
class KubeCredentials:
    server: str
    namespace: str
    context: str
    path: str
    token: str | None = None
    verify: ssl.SSLContext | bool = True

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"} if self.token else {}


def _named(entries, name, kind):
    for entry in entries or []:
        if entry.get("name") == name:
            return entry.get(kind, {})
    raise ConfigurationError(f"kubeconfig has no {kind} named '{name}'")


def _read_data(section, key, base_dir):
    """Inline ``<key>-data`` (base64) or a ``<key>`` file path, as bytes."""
    if section.get(f"{key}-data"):
        return base64.b64decode(section[f"{key}-data"])
    if section.get(key):
        path = os.path.join(base_dir, os.path.expanduser(section[key]))
        with open(path, "rb") as f:
            return f.read()
    return None


def _ssl_context(cluster, user, base_dir):
    if cluster.get("insecure-skip-tls-verify"):
        logger.warning("WARNING: kubeconfig disables TLS verification for the API server")
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    else:
        ca = _read_data(cluster, "certificate-authority", base_dir)
        context = ssl.create_default_context(cadata=ca.decode() if ca else None)

    cert = _read_data(user, "client-certificate", base_dir)
    key = _read_data(user, "client-key", base_dir)
    if cert and key:
        # load_cert_chain only reads files; the material is in memory afterwards
        with tempfile.TemporaryDirectory() as tmp:
            cert_path, key_path = os.path.join(tmp, "client.crt"), os.path.join(tmp, "client.key")
            with open(cert_path, "wb") as f:
                f.write(cert)
            with open(key_path, "wb") as f:
                f.write(key)
            context.load_cert_chain(cert_path, key_path)
    return context


def load_kubeconfig(path=None, context=None) -> KubeCredentials:
    """Resolve *context* (default: current-context) of a kubeconfig file.

    ``KUBE_TOKEN`` overrides the user's token when set.

    Raises:
        ConfigurationError: the file, context, cluster or user is missing, or
            the user authenticates with an exec plugin.
    """
    path = os.path.expanduser(path or os.environ.get("KUBECONFIG", "").split(os.pathsep)[0] or DEFAULT_KUBECONFIG)
    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read kubeconfig '{path}': {e}") from e

    context_name = context or config.get("current-context")
    if not context_name:
        raise ConfigurationError(f"kubeconfig '{path}' has no current-context; pass kube-pod.context")
    ctx = _named(config.get("contexts"), context_name, "context")
    cluster = _named(config.get("clusters"), ctx.get("cluster"), "cluster")
    user = _named(config.get("users"), ctx.get("user"), "user") if ctx.get("user") else {}

    if user.get("exec") and not os.environ.get("KUBE_TOKEN"):
        raise ConfigurationError("kubeconfig exec credential plugins are not supported; set KUBE_TOKEN instead")

    token = os.environ.get("KUBE_TOKEN") or user.get("token")
    if not token and user.get("tokenFile"):
        with open(os.path.expanduser(user["tokenFile"])) as f:
            token = f.read().strip()
    register_secret(token)

    base_dir = os.path.dirname(path)
    server = cluster.get("server")
    if not server:
        raise ConfigurationError(f"Cluster '{ctx.get('cluster')}' has no server")
    return KubeCredentials(
        server=server.rstrip("/"),
        namespace=ctx.get("namespace", "default"),
        context=context_name,
        path=path,
        token=token,
        verify=_ssl_context(cluster, user, base_dir) if server.startswith("https") else True,
    )
