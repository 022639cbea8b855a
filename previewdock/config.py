"""Configuration loading: YAML file, PREVIEWDOCK_* env vars, CLI overrides."""

import copy
import logging
import os

import yaml

from previewdock.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.previewdock/config.yaml"

DEFAULTS = {
    "backend": None,
    "profile_dir": "~/.previewdock",
    "relay": None,
    "relay_username": "previewdock",
    "insecure_skip_verify": False,
    "tls_ca_file": None,
    "tls_pinned_sha256": None,
    "relay_host_key": None,
    "telemetry": False,
    "telemetry_url": None,
    "concurrency": 8,
    "provision_timeout": 900,
    "gce": {},
    "kube-pod": {},
    "fake": {},
}


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# env var -> (key path, parser)
ENV_OVERRIDES = {
    "PREVIEWDOCK_BACKEND": (("backend",), str),
    "PREVIEWDOCK_PROFILE_DIR": (("profile_dir",), str),
    "PREVIEWDOCK_RELAY": (("relay",), str),
    "PREVIEWDOCK_INSECURE_SKIP_VERIFY": (("insecure_skip_verify",), _bool),
    "PREVIEWDOCK_TLS_CA_FILE": (("tls_ca_file",), str),
    "PREVIEWDOCK_RELAY_HOST_KEY": (("relay_host_key",), str),
    "PREVIEWDOCK_TELEMETRY": (("telemetry",), _bool),
    "PREVIEWDOCK_CONCURRENCY": (("concurrency",), int),
    "PREVIEWDOCK_GCE_PROJECT": (("gce", "project"), str),
    "PREVIEWDOCK_GCE_ZONE": (("gce", "zone"), str),
    "PREVIEWDOCK_KUBE_NAMESPACE": (("kube-pod", "namespace"), str),
    "PREVIEWDOCK_KUBE_CONTEXT": (("kube-pod", "context"), str),
}


def _set(config, key_path, value):
    target = config
    for key in key_path[:-1]:
        target = target.setdefault(key, {})
    target[key_path[-1]] = value


def _merge(base: dict, override: dict) -> dict:
    """Deep merge *override* into a copy of *base*."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path=None, overrides=None, environ=None) -> dict:
    """Load configuration.

    Precedence (lowest first): defaults, YAML file, PREVIEWDOCK_* env vars,
    *overrides* (CLI flags; None values are ignored). A missing file at the
    default location means defaults; a missing explicit file is an error.

    Raises:
        ConfigurationError: unreadable file, invalid YAML, bad env value.
    """
    environ = os.environ if environ is None else environ
    explicit = config_path is not None
    path = os.path.expanduser(config_path or DEFAULT_CONFIG_PATH)

    file_config = {}
    try:
        with open(path) as f:
            file_config = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        if explicit:
            raise ConfigurationError(f"Config file '{path}' not found.") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing YAML config '{path}': {e}") from e
    if not isinstance(file_config, dict):
        raise ConfigurationError(f"Config file '{path}' must contain a mapping")

    config = _merge(DEFAULTS, file_config)

    for var, (key_path, parse) in ENV_OVERRIDES.items():
        if var in environ:
            try:
                _set(config, key_path, parse(environ[var]))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {var}: {environ[var]!r}") from e

    for key, value in (overrides or {}).items():
        if value is not None:
            config[key] = value

    config["profile_dir"] = os.path.expanduser(config["profile_dir"])
    return config
