"""In-memory backend: a correct, non-networked implementation of the contract.

Used by tests and by ``--backend fake`` dry runs. Every error kind can be
injected per operation with ``inject_failure``.
"""

import asyncio
import logging
import shlex
from dataclasses import replace
from datetime import datetime, timezone

from previewdock.driver.types import (
    ALL_KINDS,
    ConnectionParams,
    DeletableResource,
    KeyPair,
    LocalAddress,
    Machine,
    MachineAddress,
    MachineFilter,
    NoAuth,
    ResourceKind,
    Snapshot,
)
from previewdock.errors import ConfigurationError, ResourceNotFoundError, UnreachableError

logger = logging.getLogger(__name__)

OPERATIONS = ("provision", "list", "delete", "snapshot", "exec")


def _now():
    return datetime.now(timezone.utc)


async def default_runner(command, stdin, stdout, stderr):
    """Tiny command interpreter: echo, cat, true, false, exit N."""
    argv = shlex.split(command)
    if not argv:
        return 0
    name, args = argv[0], argv[1:]
    if name == "echo":
        stdout((" ".join(args) + "\n").encode())
        return 0
    if name == "cat":
        if stdin is not None:
            async for chunk in stdin:
                stdout(chunk)
        return 0
    if name == "true":
        return 0
    if name == "false":
        return 1
    if name == "exit":
        return int(args[0]) if args else 0
    stderr(f"{name}: command not found\n".encode())
    return 127


class FakeBackend:
    """Process-local backend.

    Args:
        location: value reported as region/zone for every resource.
        command_runner: async ``(command, stdin, stdout, stderr) -> exit code``
            used for exec. stdout/stderr are ``write(bytes)`` callables.
        interactive: when False, the backend is batch-only and the execution
            router rejects requests with an input stream.
        with_key_pair: create a key pair on first provision.
    """

    name = "fake"

    def __init__(self, location="fake-1", command_runner=None, interactive=True, with_key_pair=True):
        self.location = location
        self.command_runner = command_runner or default_runner
        self.interactive = interactive
        self.with_key_pair = with_key_pair
        self.machines: dict[str, Machine] = {}
        self.snapshots: dict[str, Snapshot] = {}
        self.key_pairs: dict[str, KeyPair] = {}
        self.calls: list[tuple] = []
        self._failures: dict[str, list[Exception]] = {op: [] for op in OPERATIONS}
        self._counter = 0

    # ── Test helpers ──────────────────────────────────────────────

    def inject_failure(self, operation, error, times=1):
        """Make the next *times* calls of *operation* raise *error*."""
        if operation not in self._failures:
            raise ValueError(f"Unknown operation '{operation}'. Known: {', '.join(OPERATIONS)}")
        self._failures[operation].extend([error] * times)

    def add_machine(self, env_id=None, provider_id=None, key_pair_id=None):
        """Insert a machine directly, e.g. an untagged one created out-of-band."""
        machine = Machine(
            provider_id=provider_id or self._next_id("vm"),
            env_id=env_id,
            created_at=_now(),
            address=MachineAddress("127.0.0.1", 22),
            location=self.location,
            instance_type="fake.small",
            status="running",
            key_pair_id=key_pair_id,
        )
        self.machines[machine.provider_id] = machine
        return machine

    def add_snapshot(self, source_env_id=None, provider_id=None):
        snapshot = Snapshot(
            provider_id=provider_id or self._next_id("snap"),
            source_env_id=source_env_id,
            created_at=_now(),
            size_gb=10,
            location=self.location,
            status="available",
        )
        self.snapshots[snapshot.provider_id] = snapshot
        return snapshot

    def add_key_pair(self, provider_id=None):
        key_pair = KeyPair(
            provider_id=provider_id or self._next_id("key"),
            name="previewdock",
            fingerprint=f"SHA256:fake{self._counter}",
            created_at=_now(),
            location=self.location,
        )
        self.key_pairs[key_pair.provider_id] = key_pair
        return key_pair

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}-{self._counter:04d}"

    def _maybe_fail(self, operation):
        pending = self._failures[operation]
        if pending:
            raise pending.pop(0)

    # ── Contract ──────────────────────────────────────────────────

    async def provision(self, env_id, sizing=None):
        self.calls.append(("provision", env_id))
        await asyncio.sleep(0)
        self._maybe_fail("provision")

        for machine in self.machines.values():
            if machine.env_id == env_id:
                logger.info(f"Machine {machine.provider_id} already exists for {env_id}")
                return machine

        if sizing is not None and sizing.from_snapshot and sizing.from_snapshot not in self.snapshots:
            raise ConfigurationError(f"Snapshot '{sizing.from_snapshot}' does not exist")

        key_pair_id = None
        if self.with_key_pair:
            if not self.key_pairs:
                self.add_key_pair()
            key_pair_id = next(iter(self.key_pairs))

        machine = self.add_machine(env_id=env_id, key_pair_id=key_pair_id)
        if sizing is not None and sizing.machine_type:
            machine = replace(machine, instance_type=sizing.machine_type)
            self.machines[machine.provider_id] = machine
        logger.info(f"Created machine {machine.provider_id} for {env_id}")
        return machine

    async def list_machines(self, machine_filter=None):
        self.calls.append(("list_machines",))
        machine_filter = machine_filter or MachineFilter()
        self._maybe_fail("list")
        for machine in list(self.machines.values()):
            await asyncio.sleep(0)
            if machine_filter.matches(machine):
                yield machine

    async def list_deletable_resources(self, kinds=None):
        kinds = set(kinds) if kinds is not None else ALL_KINDS
        self.calls.append(("list_deletable_resources", tuple(sorted(k.value for k in kinds))))
        self._maybe_fail("list")
        stores = (
            (ResourceKind.MACHINE, self.machines),
            (ResourceKind.SNAPSHOT, self.snapshots),
            (ResourceKind.KEYPAIR, self.key_pairs),
        )
        for kind, store in stores:
            if kind not in kinds:
                continue
            for resource in list(store.values()):
                await asyncio.sleep(0)
                yield DeletableResource.of(resource)

    async def delete_resource(self, resource, wait=False, strict=False):
        self.calls.append(("delete_resource", resource.kind.value, resource.provider_id, wait))
        await asyncio.sleep(0)
        self._maybe_fail("delete")
        store = {
            ResourceKind.MACHINE: self.machines,
            ResourceKind.SNAPSHOT: self.snapshots,
            ResourceKind.KEYPAIR: self.key_pairs,
        }[resource.kind]
        if store.pop(resource.provider_id, None) is None and strict:
            raise ResourceNotFoundError(f"{resource.kind.value} '{resource.provider_id}' not found")

    async def create_snapshot(self, machine, name=None):
        self.calls.append(("create_snapshot", machine.provider_id))
        await asyncio.sleep(0)
        self._maybe_fail("snapshot")
        if machine.provider_id not in self.machines:
            raise ResourceNotFoundError(f"machine '{machine.provider_id}' not found")
        return self.add_snapshot(source_env_id=machine.env_id, provider_id=name)

    def connection_params(self, machine):
        return ConnectionParams(
            address=LocalAddress(machine.provider_id, runner=self._run, interactive=self.interactive),
            auth=NoAuth(),
        )

    async def _run(self, machine_id, command, stdin, stdout, stderr):
        self.calls.append(("exec", machine_id, command))
        self._maybe_fail("exec")
        if machine_id not in self.machines:
            raise UnreachableError(f"Machine {machine_id} is gone")
        return await self.command_runner(command, stdin, stdout, stderr)
