"""Capability interface every backend adapter satisfies.

There is no shared base implementation: each backend (gce, kube-pod, fake)
implements this contract on its own.
"""

from collections.abc import AsyncIterator, Iterable
from typing import Protocol, runtime_checkable

from previewdock.driver.types import (
    ConnectionParams,
    DeletableResource,
    Machine,
    MachineFilter,
    ResourceKind,
    SizingHints,
    Snapshot,
)


@runtime_checkable
class BackendAdapter(Protocol):
    """Uniform contract over one provider."""

    name: str

    async def provision(self, env_id: str, sizing: SizingHints | None = None) -> Machine:
        """Create the environment's machine, or return the live one if it exists.

        Raises:
            ProvisionError: transient provider failure (retryable).
            QuotaError: provider limits hit.
            ConfigurationError: missing/invalid identity or region inputs.
        """
        ...

    def list_machines(self, machine_filter: MachineFilter | None = None) -> AsyncIterator[Machine]:
        """Lazily yield machines. Each call starts a fresh live query.

        Machines without environment tagging are yielded with ``env_id=None``.
        """
        ...

    def list_deletable_resources(self, kinds: Iterable[ResourceKind] | None = None) -> AsyncIterator[DeletableResource]:
        """Yield machines, snapshots and key pairs as DeletableResource values."""
        ...

    async def delete_resource(self, resource: DeletableResource, wait: bool = False, strict: bool = False) -> None:
        """Delete one resource.

        A missing resource is a silent success unless *strict* is set, in
        which case ResourceNotFoundError is raised. ``wait=False`` returns once
        the provider accepted the deletion.
        """
        ...

    async def create_snapshot(self, machine: Machine, name: str | None = None) -> Snapshot:
        """Capture the machine's disk. ConfigurationError if unsupported."""
        ...

    def connection_params(self, machine: Machine) -> ConnectionParams:
        """Describe how to reach *machine*. Never opens a connection."""
        ...
