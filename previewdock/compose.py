"""Docker Compose input: project name and declared service ports."""

import logging
import os
import re
from dataclasses import dataclass, field

import yaml

from previewdock.errors import ConfigurationError
from previewdock.tunnel.client import ServicePort

logger = logging.getLogger(__name__)

DEFAULT_COMPOSE_FILES = ("compose.yaml", "compose.yml", "docker-compose.yaml", "docker-compose.yml")


@dataclass
class ComposeProject:
    name: str
    path: str
    services: list[ServicePort] = field(default_factory=list)


def find_compose_file(directory="."):
    """First default compose file name present in *directory*, or None."""
    for candidate in DEFAULT_COMPOSE_FILES:
        path = os.path.join(directory, candidate)
        if os.path.exists(path):
            return path
    return None


def project_name(config, path):
    """Compose project name: $COMPOSE_PROJECT_NAME, top-level ``name``, else the directory name."""
    raw = os.environ.get("COMPOSE_PROJECT_NAME") or config.get("name")
    if not raw:
        raw = os.path.basename(os.path.dirname(os.path.abspath(path)))
    return re.sub(r"[^a-z0-9_-]", "", raw.lower())


def _expand(spec):
    """'3000' -> [3000]; '3000-3002' -> [3000, 3001, 3002]."""
    if "-" in spec:
        start, end = spec.split("-", 1)
        return list(range(int(start), int(end) + 1))
    return [int(spec)]


def parse_port(entry):
    """Parse one ``ports:`` entry into (container port, published port | None) pairs.

    Handles the short syntax (``80``, ``8080:80``, ``127.0.0.1:8080:80/tcp``,
    ranges) and the long syntax (``{target: 80, published: 8080}``). UDP ports
    are skipped since the tunnel only carries TCP.
    """
    if isinstance(entry, int):
        return [(entry, None)]
    if isinstance(entry, dict):
        if entry.get("protocol", "tcp") != "tcp":
            return []
        published = entry.get("published")
        return [(int(entry["target"]), int(published) if published not in (None, "") else None)]

    spec = str(entry)
    spec, _, protocol = spec.partition("/")
    if protocol and protocol != "tcp":
        return []
    parts = spec.rsplit(":", 2)
    targets = _expand(parts[-1])
    if len(parts) == 1 or not parts[-2]:
        return [(t, None) for t in targets]
    published = _expand(parts[-2])
    if len(published) == 1 and len(targets) > 1:
        published = [None] * len(targets)
    if len(published) != len(targets):
        raise ConfigurationError(f"Port range mismatch in '{entry}'")
    return list(zip(targets, published))


def load_compose(path) -> ComposeProject:
    """Read a compose file.

    Raises:
        ConfigurationError: the file is missing or not valid YAML.
    """
    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError as e:
        raise ConfigurationError(f"Compose file '{path}' not found") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing compose file '{path}': {e}") from e

    services = []
    for service, definition in (config.get("services") or {}).items():
        for entry in (definition or {}).get("ports", []):
            try:
                pairs = parse_port(entry)
            except (ValueError, KeyError) as e:
                raise ConfigurationError(f"Invalid port '{entry}' in service '{service}'") from e
            services.extend(ServicePort(service, target, published) for target, published in pairs)
    logger.debug(f"Compose file {path}: {len(services)} service port(s)")
    return ComposeProject(name=project_name(config, path), path=path, services=services)
