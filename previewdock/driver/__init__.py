"""Machine driver: resource model, adapter contract, env ids, teardown."""

from previewdock.driver.adapter import BackendAdapter
from previewdock.driver.envid import ProjectContext, derive_env_id, detect_git_branch, normalize_env_id
from previewdock.driver.machine_driver import MachineDriver
from previewdock.driver.teardown import DeleteReport, PurgeSelection, delete_resources, purge
from previewdock.driver.types import (
    RESOURCE_COLUMNS,
    ConnectionParams,
    DeletableResource,
    KeyPair,
    Machine,
    MachineFilter,
    ResourceKind,
    SizingHints,
    Snapshot,
)

__all__ = [
    "BackendAdapter",
    "MachineDriver",
    "ProjectContext",
    "derive_env_id",
    "detect_git_branch",
    "normalize_env_id",
    "DeleteReport",
    "PurgeSelection",
    "delete_resources",
    "purge",
    "RESOURCE_COLUMNS",
    "ConnectionParams",
    "DeletableResource",
    "KeyPair",
    "Machine",
    "MachineFilter",
    "ResourceKind",
    "SizingHints",
    "Snapshot",
]
