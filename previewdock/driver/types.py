"""Resource model shared by every backend adapter."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# Listing columns. Output formatting is a projection over these.
RESOURCE_COLUMNS = ("kind", "id", "env_id", "created_at", "location", "status")

UNTAGGED = "(untagged)"


class ResourceKind(str, Enum):
    MACHINE = "machine"
    SNAPSHOT = "snapshot"
    KEYPAIR = "keypair"


ALL_KINDS = frozenset(ResourceKind)


@dataclass(frozen=True)
class MachineAddress:
    """Reachable address of a machine (host + port)."""

    host: str
    port: int = 22


@dataclass(frozen=True)
class Machine:
    """One provisioned compute unit.

    ``env_id`` is None for machines that exist in the provider without
    previewdock tagging (created out-of-band).
    """

    provider_id: str
    env_id: str | None
    created_at: datetime | None = None
    address: MachineAddress | None = None
    location: str = ""
    instance_type: str = ""
    status: str = ""
    key_pair_id: str | None = None
    metadata: dict = field(default_factory=dict, compare=False)

    @property
    def tagged(self) -> bool:
        return self.env_id is not None

    @property
    def display_env_id(self) -> str:
        return self.env_id if self.env_id is not None else UNTAGGED


@dataclass(frozen=True)
class Snapshot:
    """Provider-side disk image of a machine."""

    provider_id: str
    source_env_id: str | None
    created_at: datetime | None = None
    size_gb: float | None = None
    location: str = ""
    status: str = ""
    metadata: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class KeyPair:
    """Credential artifact used to reach machines."""

    provider_id: str
    name: str = ""
    fingerprint: str = ""
    created_at: datetime | None = None
    location: str = ""
    private_key_path: str | None = None


@dataclass(frozen=True)
class DeletableResource:
    """Tagged union over Machine, Snapshot and KeyPair.

    Built once at the adapter boundary; callers dispatch on ``kind`` and pass
    the whole value back to ``delete_resource``.
    """

    kind: ResourceKind
    provider_id: str
    resource: Machine | Snapshot | KeyPair

    @classmethod
    def of(cls, resource):
        if isinstance(resource, Machine):
            return cls(ResourceKind.MACHINE, resource.provider_id, resource)
        if isinstance(resource, Snapshot):
            return cls(ResourceKind.SNAPSHOT, resource.provider_id, resource)
        if isinstance(resource, KeyPair):
            return cls(ResourceKind.KEYPAIR, resource.provider_id, resource)
        raise TypeError(f"Not a deletable resource: {type(resource).__name__}")

    @property
    def env_id(self) -> str | None:
        if self.kind is ResourceKind.MACHINE:
            return self.resource.env_id
        if self.kind is ResourceKind.SNAPSHOT:
            return self.resource.source_env_id
        return None

    @property
    def status(self) -> str:
        return getattr(self.resource, "status", "")

    def to_row(self) -> dict:
        """Row with the stable listing columns."""
        created = self.resource.created_at
        if self.kind is ResourceKind.KEYPAIR:
            env_id = ""
        else:
            env_id = self.env_id if self.env_id is not None else UNTAGGED
        return {
            "kind": self.kind.value,
            "id": self.provider_id,
            "env_id": env_id,
            "created_at": created.isoformat() if created else "",
            "location": self.resource.location,
            "status": self.status,
        }


@dataclass(frozen=True)
class SizingHints:
    """Optional provisioning hints. Backends ignore what they cannot honor."""

    machine_type: str | None = None
    disk_size_gb: int | None = None
    from_snapshot: str | None = None


@dataclass(frozen=True)
class MachineFilter:
    env_id: str | None = None
    include_untagged: bool = True

    def matches(self, machine: Machine) -> bool:
        if self.env_id is not None:
            return machine.env_id == self.env_id
        return machine.tagged or self.include_untagged


# ── Connection parameters ─────────────────────────────────────────


@dataclass(frozen=True)
class SshAddress:
    host: str
    port: int = 22
    username: str = ""

    @property
    def destination(self) -> str:
        """SSH destination string (user@host)."""
        return f"{self.username}@{self.host}" if self.username else self.host


@dataclass(frozen=True)
class PodAddress:
    namespace: str
    pod: str
    container: str
    api_server: str = ""


@dataclass(frozen=True)
class LocalAddress:
    """In-process target, used by the fake backend."""

    machine_id: str
    runner: object = field(compare=False, default=None)
    interactive: bool = True


@dataclass(frozen=True)
class KeyAuth:
    private_key_path: str


@dataclass(frozen=True)
class KubeconfigAuth:
    kubeconfig: str | None = None
    context: str | None = None


@dataclass(frozen=True)
class NoAuth:
    pass


@dataclass(frozen=True)
class ConnectionParams:
    """What the execution router and tunnel client need to reach a machine."""

    address: SshAddress | PodAddress | LocalAddress
    auth: KeyAuth | KubeconfigAuth | NoAuth = field(default_factory=NoAuth)
