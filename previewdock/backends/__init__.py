"""Backend adapters and the registry that picks one from configuration."""

from previewdock.errors import ConfigurationError

BACKENDS = ("gce", "kube-pod", "fake")


def _gce(config, dry_run):
    from previewdock.backends.gce import GceBackend

    return GceBackend(profile_dir=config["profile_dir"], dry_run=dry_run, **config.get("gce", {}))


def _kube_pod(config, dry_run):
    from previewdock.backends.kube_pod import KubePodBackend

    return KubePodBackend(**config.get("kube-pod", {}))


def _fake(config, dry_run):
    from previewdock.backends.fake import FakeBackend

    return FakeBackend(**config.get("fake", {}))


_FACTORIES = {"gce": _gce, "kube-pod": _kube_pod, "fake": _fake}


def create_adapter(config: dict, dry_run=False):
    """Build the backend adapter named by ``config["backend"]``.

    Raises:
        ConfigurationError: no backend, an unknown one, or invalid settings
            in its config section.
    """
    name = config.get("backend")
    if not name:
        raise ConfigurationError(f"No backend configured. Set 'backend' to one of: {', '.join(BACKENDS)}")
    factory = _FACTORIES.get(name)
    if factory is None:
        raise ConfigurationError(f"Unknown backend '{name}'. Known backends: {', '.join(BACKENDS)}")
    try:
        return factory(config, dry_run)
    except TypeError as e:
        raise ConfigurationError(f"Invalid '{name}' settings: {e}") from e
