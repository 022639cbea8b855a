"""Machine driver: the polymorphic facade commands call.

Holds nothing but the active adapter. Every list/provision is a live query.
"""

import asyncio
import logging

from previewdock.driver.envid import ProjectContext, derive_env_id, normalize_env_id
from previewdock.driver.types import DeletableResource, MachineFilter, ResourceKind
from previewdock.errors import AmbiguousEnvironmentError, ResourceNotFoundError
from previewdock.retry import RetryConfig, is_retryable, retry_transient, with_deadline

logger = logging.getLogger(__name__)


class MachineDriver:
    """Dispatch layer over exactly one BackendAdapter.

    Args:
        adapter: the active backend adapter, resolved from configuration.
        detectors: env id detectors, callables ``(ProjectContext) -> str | None``,
            tried in order. Defaults to ``derive_env_id``.
        retry: policy for transient errors of every adapter call.
    """

    def __init__(self, adapter, detectors=None, retry: RetryConfig | None = None):
        self.adapter = adapter
        self.detectors = list(detectors) if detectors is not None else [derive_env_id]
        self.retry = retry or RetryConfig()

    @property
    def backend_name(self) -> str:
        return self.adapter.name

    # ── Environment id ─────────────────────────────────────────────

    async def resolve_environment_id(self, explicit_id=None, context: ProjectContext | None = None) -> str:
        """Explicit id if given, else derive from project context.

        Falls back to the single environment that currently has machines.
        Zero or several candidates raise AmbiguousEnvironmentError.
        """
        if explicit_id:
            return normalize_env_id(explicit_id)

        context = context or ProjectContext()
        for detector in self.detectors:
            env_id = detector(context)
            if env_id:
                return env_id

        candidates = sorted({m.env_id async for m in self.list_machines(MachineFilter(include_untagged=False))})
        if len(candidates) == 1:
            logger.info(f"Using the only existing environment: {candidates[0]}")
            return candidates[0]
        if not candidates:
            raise AmbiguousEnvironmentError("Could not detect an environment id. Pass --id or run inside a compose project.")
        raise AmbiguousEnvironmentError(f"Several environments exist ({', '.join(candidates)}). Pass --id to pick one.")

    # ── Machines ───────────────────────────────────────────────────

    async def provision(self, env_id, sizing=None, timeout=None):
        """Provision (or find) the environment's machine.

        Transient errors are retried with backoff; the whole operation is
        bounded by *timeout* seconds.
        """
        operation = retry_transient(
            lambda: self.adapter.provision(env_id, sizing),
            operation_name=f"provision {env_id}",
            config=self.retry,
        )
        return await with_deadline(operation, timeout, f"provision {env_id}")

    def list_machines(self, machine_filter=None):
        return self._retrying(lambda: self.adapter.list_machines(machine_filter), "list machines")

    async def find_machines(self, env_id):
        return [m async for m in self.list_machines(MachineFilter(env_id=env_id))]

    async def get_machine(self, env_id):
        """The environment's machine. ResourceNotFoundError if there is none."""
        machines = await self.find_machines(env_id)
        if not machines:
            raise ResourceNotFoundError(f"No machine found for environment '{env_id}' on backend '{self.backend_name}'")
        return machines[0]

    def connection_params(self, machine):
        return self.adapter.connection_params(machine)

    # ── Resources ──────────────────────────────────────────────────

    def list_deletable_resources(self, kinds=None):
        return self._retrying(lambda: self.adapter.list_deletable_resources(kinds), "list resources")

    async def delete_resource(self, resource: DeletableResource, wait=False, force=False):
        """Delete a resource. Without *force*, a missing resource is an error.

        Transient errors are retried; a retry that finds the resource gone
        counts as success, since the failed attempt may have deleted it.
        """
        attempts = 0

        async def _delete():
            nonlocal attempts
            attempts += 1
            await self.adapter.delete_resource(resource, wait=wait, strict=not force and attempts == 1)

        await retry_transient(_delete, f"delete {resource.kind.value} {resource.provider_id}", config=self.retry)

    async def snapshot(self, env_id, name=None):
        machine = await self.get_machine(env_id)
        logger.info(f"Snapshotting {machine.provider_id} ({env_id})...")
        return await retry_transient(
            lambda: self.adapter.create_snapshot(machine, name=name),
            f"snapshot {machine.provider_id}",
            config=self.retry,
        )

    async def listing_rows(self, kinds=None):
        """Rows with the stable listing columns, one per resource."""
        kinds = kinds or [ResourceKind.MACHINE, ResourceKind.SNAPSHOT, ResourceKind.KEYPAIR]
        return [r.to_row() async for r in self.list_deletable_resources(kinds)]

    async def _retrying(self, listing, operation_name):
        """Iterate ``listing()``, restarting on a transient error before the first item.

        Once an item has been yielded a restart would repeat it, so later
        errors propagate.
        """
        for attempt in range(self.retry.max_attempts):
            yielded = False
            try:
                async for item in listing():
                    yielded = True
                    yield item
                return
            except Exception as e:
                if yielded or not is_retryable(e) or attempt >= self.retry.max_attempts - 1:
                    raise
                delay = self.retry.calculate_delay(attempt)
                logger.info(f"{operation_name}: attempt {attempt + 1} failed ({type(e).__name__}: {e}). Retrying in {delay:.1f}s...")
                await asyncio.sleep(delay)
