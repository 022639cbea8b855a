"""Error taxonomy shared by every backend, the execution router and the tunnel.

Backends translate provider-native failures into these types before they
leave the adapter. ``retryable`` marks the transient ones.
"""


class PreviewdockError(Exception):
    """Base class for all previewdock errors."""

    retryable = False
    exit_code = 1


class ConfigurationError(PreviewdockError):
    """Missing or invalid inputs (backend id, region, credentials path, ...)."""

    exit_code = 2


class ProvisionError(PreviewdockError):
    """Transient provider failure while creating or changing resources."""

    retryable = True


class QuotaError(PreviewdockError):
    """Provider limits were hit. Requires user action."""


class UnreachableError(PreviewdockError):
    """The machine (or API endpoint) could not be dialed in time."""

    retryable = True


class AuthenticationError(PreviewdockError):
    """Key material or credentials were rejected."""


class OperationTimeoutError(PreviewdockError, TimeoutError):
    """An overall deadline expired. In-flight provider calls are abandoned."""

    retryable = True


class AmbiguousEnvironmentError(PreviewdockError):
    """The environment id cannot be detected without an explicit --id."""


class OutputTooLargeError(PreviewdockError):
    """Buffered command output exceeded the configured bound."""

    def __init__(self, limit, message=None):
        self.limit = limit
        super().__init__(message or f"Command output exceeded {limit} bytes")


class TunnelLostError(PreviewdockError):
    """The relay session dropped and could not be re-established."""


class ResourceNotFoundError(PreviewdockError):
    """The resource (or environment) does not exist."""


class PartialDeletionError(PreviewdockError):
    """One or more deletions failed. ``report`` lists every outcome."""

    def __init__(self, report):
        self.report = report
        failed = ", ".join(f"{r.kind.value}/{r.provider_id}" for r, _ in report.failed)
        super().__init__(f"Failed to delete {len(report.failed)} resource(s): {failed}")
