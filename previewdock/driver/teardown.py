"""Multi-resource deletion with partial-failure reporting."""

import asyncio
import logging
from dataclasses import dataclass, field

from previewdock.driver.types import DeletableResource, MachineFilter, ResourceKind

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8


@dataclass
class DeleteReport:
    """Outcome of a deletion run. Nothing here is raised individually."""

    succeeded: list[DeletableResource] = field(default_factory=list)
    failed: list[tuple[DeletableResource, Exception]] = field(default_factory=list)
    skipped: list[tuple[DeletableResource, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def affected(self) -> int:
        return len(self.succeeded)

    def merge(self, other: "DeleteReport") -> None:
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)
        self.skipped.extend(other.skipped)

    def summary_rows(self) -> list[dict]:
        rows = [{**r.to_row(), "result": "deleted", "reason": ""} for r in self.succeeded]
        rows += [{**r.to_row(), "result": "failed", "reason": str(e)} for r, e in self.failed]
        rows += [{**r.to_row(), "result": "skipped", "reason": why} for r, why in self.skipped]
        return rows


@dataclass(frozen=True)
class PurgeSelection:
    """Kind selectors for purge. Nothing selected means nothing is deleted."""

    machines: bool = False
    snapshots: bool = False
    key_pairs: bool = False
    all: bool = False

    @property
    def kinds(self) -> list[ResourceKind]:
        if self.all:
            return [ResourceKind.MACHINE, ResourceKind.SNAPSHOT, ResourceKind.KEYPAIR]
        kinds = []
        if self.machines:
            kinds.append(ResourceKind.MACHINE)
        if self.snapshots:
            kinds.append(ResourceKind.SNAPSHOT)
        if self.key_pairs:
            kinds.append(ResourceKind.KEYPAIR)
        return kinds


async def delete_resources(driver, resources, force=False, wait=False, concurrency=DEFAULT_CONCURRENCY) -> DeleteReport:
    """Delete *resources* concurrently, at most *concurrency* at a time.

    One failure never blocks or rolls back the others.
    """
    report = DeleteReport()
    if not resources:
        return report

    sem = asyncio.Semaphore(max(1, concurrency))

    async def _delete(resource):
        async with sem:
            logger.info(f"Deleting {resource.kind.value} {resource.provider_id}...")
            await driver.delete_resource(resource, wait=wait, force=force)

    results = await asyncio.gather(*(_delete(r) for r in resources), return_exceptions=True)
    for resource, result in zip(resources, results):
        if isinstance(result, Exception):
            logger.error(f"Failed to delete {resource.kind.value} {resource.provider_id}: {result}")
            report.failed.append((resource, result))
        elif isinstance(result, BaseException):
            raise result
        else:
            report.succeeded.append(resource)
    return report


async def purge(driver, selection: PurgeSelection, force=False, wait=False, concurrency=DEFAULT_CONCURRENCY) -> DeleteReport:
    """Delete every resource of the selected kinds.

    Machines go first, then snapshots, then key pairs. Key pairs still used
    by a live machine are skipped.
    """
    report = DeleteReport()
    kinds = selection.kinds
    if not kinds:
        logger.info("No resource kinds selected, nothing to purge.")
        return report

    resources = [r async for r in driver.list_deletable_resources(kinds)]
    by_kind = {kind: [r for r in resources if r.kind is kind] for kind in kinds}

    # Machine deletion must complete before dependent key pairs are judged
    wait_machines = wait or ResourceKind.KEYPAIR in kinds
    if ResourceKind.MACHINE in by_kind:
        report.merge(await delete_resources(driver, by_kind[ResourceKind.MACHINE], force, wait_machines, concurrency))
    if ResourceKind.SNAPSHOT in by_kind:
        report.merge(await delete_resources(driver, by_kind[ResourceKind.SNAPSHOT], force, wait, concurrency))
    if ResourceKind.KEYPAIR in by_kind:
        in_use = {m.key_pair_id async for m in driver.list_machines(MachineFilter()) if m.key_pair_id}
        deletable = []
        for key_pair in by_kind[ResourceKind.KEYPAIR]:
            if key_pair.provider_id in in_use:
                logger.warning(f"Skipping key pair {key_pair.provider_id}: still used by a live machine")
                report.skipped.append((key_pair, "in use by a live machine"))
            else:
                deletable.append(key_pair)
        report.merge(await delete_resources(driver, deletable, force, wait, concurrency))

    logger.info(f"Purge finished: {len(report.succeeded)} deleted, {len(report.failed)} failed, {len(report.skipped)} skipped.")
    return report
