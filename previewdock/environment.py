"""Environment lifecycle: up and down over driver, router and tunnel."""

import logging
from dataclasses import dataclass, field

from previewdock.driver.teardown import DEFAULT_CONCURRENCY, DeleteReport, delete_resources
from previewdock.driver.types import DeletableResource, Machine
from previewdock.errors import PreviewdockError, ResourceNotFoundError
from previewdock.execution.types import BatchExecRequest
from previewdock.tunnel.client import stop_tunnel

logger = logging.getLogger(__name__)

DEFAULT_SETUP_TIMEOUT = 600


class SetupCommandError(PreviewdockError):
    """A setup command exited non-zero on the new machine."""


@dataclass
class UpResult:
    env_id: str
    machine: Machine
    urls: dict[tuple[str, int], str] = field(default_factory=dict)
    session: object = None


async def up(
    driver,
    router,
    env_id,
    services=(),
    tunnel_factory=None,
    sizing=None,
    setup_commands=(),
    timeout=None,
    setup_timeout=DEFAULT_SETUP_TIMEOUT,
    telemetry=None,
) -> UpResult:
    """Provision the environment, run setup commands, expose service ports.

    Args:
        tunnel_factory: ``(machine) -> TunnelClient``; None skips the tunnel.
        setup_commands: run in order through the batch path; the first
            non-zero exit aborts.
        timeout: deadline for provisioning, in seconds.

    Returns:
        UpResult with the machine and the (service, port) -> URL mapping. The
        tunnel session runs on the machine until ``down``; the caller may
        watch it with ``session.hold()``.
    """
    machine = await driver.provision(env_id, sizing, timeout=timeout)
    logger.info(f"Machine {machine.provider_id} is up for environment '{env_id}'.")
    if telemetry is not None:
        telemetry.capture("env up", {"backend": driver.backend_name, "services": len(services)})

    for command in setup_commands:
        logger.info(f"Running setup: {command}")
        result = await router.run(BatchExecRequest(machine, command, timeout=setup_timeout))
        if result.exit_code != 0:
            stderr = result.output.stderr.decode(errors="replace").strip()
            raise SetupCommandError(f"Setup command '{command}' failed (exit {result.exit_code}): {stderr}")

    result = UpResult(env_id=env_id, machine=machine)
    if tunnel_factory is not None and services:
        client = tunnel_factory(machine)
        result.session = await client.open(services)
        result.urls = result.session.urls
    return result


async def down(driver, env_id, router=None, force=False, wait=False, concurrency=DEFAULT_CONCURRENCY, telemetry=None) -> DeleteReport:
    """Tear the environment down: tunnel first, then its machines.

    The tunnel agent on each machine is stopped through *router* before any
    machine is deleted, regardless of which process opened the session. With
    *force*, a machine whose agent cannot be reached is deleted anyway.

    Raises:
        ResourceNotFoundError: no machine carries *env_id* and *force* is off.

    Returns:
        DeleteReport; with *force* and nothing to delete it is empty.
    """
    machines = await driver.find_machines(env_id)
    if not machines:
        if not force:
            raise ResourceNotFoundError(f"Environment '{env_id}' not found on backend '{driver.backend_name}'")
        logger.info(f"Environment '{env_id}' not found, nothing to delete.")
        return DeleteReport()

    if router is not None:
        for machine in machines:
            try:
                await stop_tunnel(router, machine)
            except PreviewdockError as e:
                if not force:
                    raise
                logger.warning(f"Could not stop the tunnel on {machine.provider_id}, deleting anyway: {e}")

    report = await delete_resources(driver, [DeletableResource.of(m) for m in machines], force=force, wait=wait, concurrency=concurrency)
    if telemetry is not None:
        telemetry.capture("env down", {"backend": driver.backend_name, "deleted": report.affected})
    return report
