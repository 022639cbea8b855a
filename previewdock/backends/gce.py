"""GCE backend: preview machines on Compute Engine using gcloud compute.

Instances and snapshots are labeled with the environment id. Key pairs are
OS Login SSH keys registered from a profile-local ed25519 key.
"""

import asyncio
import json
import logging
import os
from datetime import datetime

from previewdock.driver.types import (
    ALL_KINDS,
    ConnectionParams,
    DeletableResource,
    KeyAuth,
    KeyPair,
    Machine,
    MachineAddress,
    MachineFilter,
    ResourceKind,
    SshAddress,
    Snapshot,
)
from previewdock.errors import (
    AuthenticationError,
    ConfigurationError,
    ProvisionError,
    QuotaError,
    ResourceNotFoundError,
)
from previewdock.shell import run_shell_cmd

logger = logging.getLogger(__name__)

LABEL_MANAGED = "previewdock"
LABEL_ENV = "previewdock-env"
LABEL_KEY = "previewdock-key"
NAME_PREFIX = "previewdock-"
KEY_COMMENT = "previewdock"
KEY_FILE = "gce_ed25519"
OSLOGIN_USER_FILE = "gce_oslogin_user"
KEY_ID_LENGTH = 32

DEFAULT_MACHINE_TYPE = "e2-standard-2"
DEFAULT_IMAGE_FAMILY = "ubuntu-2204-lts"
DEFAULT_IMAGE_PROJECT = "ubuntu-os-cloud"
DEFAULT_DISK_SIZE_GB = 30


# ── Command builders ───────────────────────────────────────────────


def _labels_arg(labels):
    return ",".join(f"{k}={v}" for k, v in labels.items())


def _gcloud_create_cmd(
    instance,
    project,
    zone,
    machine_type,
    labels,
    image_family=DEFAULT_IMAGE_FAMILY,
    image_project=DEFAULT_IMAGE_PROJECT,
    disk_size_gb=DEFAULT_DISK_SIZE_GB,
    source_snapshot=None,
):
    """Build gcloud command to create a preview instance.

    Boots from *source_snapshot* when given, else from the image family.
    """
    cmd = [
        "gcloud", "compute", "instances", "create", instance,
        "--project", project,
        "--zone", zone,
        "--machine-type", machine_type,
    ]
    if source_snapshot:
        cmd.extend(["--source-snapshot", source_snapshot])
    else:
        cmd.extend(["--image-family", image_family, "--image-project", image_project])
    cmd.extend([
        "--boot-disk-size", f"{disk_size_gb}GB",
        "--labels", _labels_arg(labels),
        "--metadata", "enable-oslogin=TRUE",
        "--format=json",
    ])
    return cmd


def _gcloud_list_cmd(project):
    """Managed instances plus out-of-band ones named like ours."""
    return [
        "gcloud", "compute", "instances", "list",
        "--project", project,
        f"--filter=labels.{LABEL_MANAGED}:* OR name~^{NAME_PREFIX}",
        "--format=json",
    ]


def _gcloud_delete_cmd(instance, project, zone, wait=True):
    cmd = ["gcloud", "compute", "instances", "delete", instance, "--project", project, "--zone", zone, "--quiet"]
    if not wait:
        cmd.append("--async")
    return cmd


def _gcloud_status_cmd(instance, project, zone):
    return [
        "gcloud", "compute", "instances", "describe", instance,
        "--project", project,
        "--zone", zone,
        "--format", "value(status)",
    ]


def _gcloud_snapshot_create_cmd(snapshot, instance, project, zone, labels):
    return [
        "gcloud", "compute", "snapshots", "create", snapshot,
        "--project", project,
        "--source-disk", instance,
        "--source-disk-zone", zone,
        "--labels", _labels_arg(labels),
        "--format=json",
    ]


def _gcloud_snapshot_list_cmd(project):
    return [
        "gcloud", "compute", "snapshots", "list",
        "--project", project,
        f"--filter=labels.{LABEL_MANAGED}:*",
        "--format=json",
    ]


def _gcloud_snapshot_delete_cmd(snapshot, project, wait=True):
    cmd = ["gcloud", "compute", "snapshots", "delete", snapshot, "--project", project, "--quiet"]
    if not wait:
        cmd.append("--async")
    return cmd


def _gcloud_oslogin_profile_cmd():
    return ["gcloud", "compute", "os-login", "describe-profile", "--format=json"]


def _gcloud_oslogin_add_cmd(public_key_path):
    return ["gcloud", "compute", "os-login", "ssh-keys", "add", "--key-file", public_key_path, "--format=json"]


def _gcloud_oslogin_remove_cmd(fingerprint):
    return ["gcloud", "compute", "os-login", "ssh-keys", "remove", "--key", fingerprint]


def _ssh_keygen_cmd(private_key_path):
    return ["ssh-keygen", "-t", "ed25519", "-N", "", "-C", KEY_COMMENT, "-f", private_key_path, "-q"]


# ── Output parsing ─────────────────────────────────────────────────


def classify_gcloud_error(stderr, action):
    """Normalize gcloud stderr into the error taxonomy."""
    text = stderr.strip()
    message = f"{action} failed: {text}"
    if "ZONE_RESOURCE_POOL_EXHAUSTED" in text or "currently unavailable" in text:
        return ProvisionError(message)
    if "QUOTA_EXCEEDED" in text or "Quota '" in text:
        return QuotaError(message)
    if "was not found" in text or "notFound" in text or "HTTPError 404" in text:
        return ResourceNotFoundError(message)
    if (
        "PERMISSION_DENIED" in text
        or ("does not have" in text and "permission" in text)
        or "active account" in text
        or "Reauthentication" in text
    ):
        return AuthenticationError(message)
    if "Invalid value" in text or "Unknown zone" in text or "INVALID_ARGUMENT" in text or "invalid choice" in text:
        return ConfigurationError(message)
    return ProvisionError(message)


def _parse_json(stdout):
    if not stdout.strip():
        return []
    return json.loads(stdout)


def _parse_time(value):
    if not value:
        return None
    return datetime.fromisoformat(value)


def _last_segment(url):
    return url.rsplit("/", 1)[-1] if url else ""


def _external_ip(instance):
    for nic in instance.get("networkInterfaces", []):
        for access in nic.get("accessConfigs", []):
            if access.get("natIP"):
                return access["natIP"]
    return ""


def _machine_from_instance(instance) -> Machine:
    labels = instance.get("labels", {})
    host = _external_ip(instance)
    return Machine(
        provider_id=instance["name"],
        env_id=labels.get(LABEL_ENV),
        created_at=_parse_time(instance.get("creationTimestamp")),
        address=MachineAddress(host, 22) if host else None,
        location=_last_segment(instance.get("zone", "")),
        instance_type=_last_segment(instance.get("machineType", "")),
        status=instance.get("status", ""),
        key_pair_id=labels.get(LABEL_KEY),
        metadata={"labels": labels},
    )


def _snapshot_from_json(snapshot) -> Snapshot:
    labels = snapshot.get("labels", {})
    size = snapshot.get("diskSizeGb")
    locations = snapshot.get("storageLocations", [])
    return Snapshot(
        provider_id=snapshot["name"],
        source_env_id=labels.get(LABEL_ENV),
        created_at=_parse_time(snapshot.get("creationTimestamp")),
        size_gb=float(size) if size else None,
        location=locations[0] if locations else "",
        status=snapshot.get("status", ""),
        metadata={"source_disk": _last_segment(snapshot.get("sourceDisk", ""))},
    )


def _key_pairs_from_profile(profile, private_key_path=None):
    """OS Login keys that previewdock generated (identified by the key comment)."""
    key_pairs = []
    for fingerprint, entry in profile.get("sshPublicKeys", {}).items():
        key = entry.get("key", "")
        if not key.strip().endswith(KEY_COMMENT):
            continue
        key_pairs.append(
            KeyPair(
                provider_id=fingerprint[:KEY_ID_LENGTH],
                name=KEY_COMMENT,
                fingerprint=entry.get("fingerprint", fingerprint),
                location="global",
                private_key_path=private_key_path,
            )
        )
    return key_pairs


def instance_name(env_id):
    return f"{NAME_PREFIX}{env_id}"[:63].rstrip("-")


# ── Backend ────────────────────────────────────────────────────────


class GceBackend:
    """Compute Engine adapter.

    Args:
        project: GCP project id.
        zone: zone instances are created in.
        profile_dir: where the ssh key and OS Login user name are kept.
        ssh_user: OS Login user override.
        ready_timeout: seconds to wait for an instance to reach RUNNING.
        dry_run: log gcloud commands instead of running them.
    """

    name = "gce"

    def __init__(
        self,
        project=None,
        zone=None,
        profile_dir="~/.previewdock",
        machine_type=DEFAULT_MACHINE_TYPE,
        image_family=DEFAULT_IMAGE_FAMILY,
        image_project=DEFAULT_IMAGE_PROJECT,
        disk_size_gb=DEFAULT_DISK_SIZE_GB,
        ssh_user=None,
        poll_interval=5,
        ready_timeout=600,
        dry_run=False,
    ):
        if not project:
            raise ConfigurationError("gce backend requires 'gce.project' (or PREVIEWDOCK_GCE_PROJECT)")
        if not zone:
            raise ConfigurationError("gce backend requires 'gce.zone' (or PREVIEWDOCK_GCE_ZONE)")
        self.project = project
        self.zone = zone
        self.profile_dir = os.path.expanduser(profile_dir)
        self.machine_type = machine_type
        self.image_family = image_family
        self.image_project = image_project
        self.disk_size_gb = disk_size_gb
        self.ssh_user = ssh_user
        self.poll_interval = poll_interval
        self.ready_timeout = ready_timeout
        self.dry_run = dry_run

    @property
    def private_key_path(self):
        return os.path.join(self.profile_dir, KEY_FILE)

    async def _gcloud(self, cmd, action, timeout=600):
        rc, stdout, stderr = await run_shell_cmd(cmd, dry_run=self.dry_run, timeout=timeout)
        if rc != 0:
            raise classify_gcloud_error(stderr, action)
        return stdout

    # ── Key pairs ──────────────────────────────────────────────────

    async def _ensure_key_pair(self):
        """Generate the profile key if needed and register it with OS Login.

        Returns:
            The key pair id used to label instances.
        """
        key_path = self.private_key_path
        if not os.path.exists(key_path):
            if self.dry_run:
                logger.info(f"[dry-run] would generate {key_path}")
                return "dry-run-key"
            os.makedirs(self.profile_dir, exist_ok=True)
            logger.info(f"Generating SSH key {key_path}...")
            await self._run_local(_ssh_keygen_cmd(key_path), "ssh-keygen")

        with open(f"{key_path}.pub") as f:
            public_key = f.read().strip()

        profile = _parse_json(await self._gcloud(_gcloud_oslogin_profile_cmd(), "describe OS Login profile")) or {}
        for fingerprint, entry in profile.get("sshPublicKeys", {}).items():
            if entry.get("key", "").strip() == public_key:
                logger.info(f"SSH key already registered with OS Login ({fingerprint[:12]}...).")
                self._remember_user(profile)
                return fingerprint[:KEY_ID_LENGTH]

        logger.info("Registering SSH key with OS Login...")
        result = _parse_json(await self._gcloud(_gcloud_oslogin_add_cmd(f"{key_path}.pub"), "register OS Login key")) or {}
        profile = result.get("loginProfile", result)
        self._remember_user(profile)
        for fingerprint, entry in profile.get("sshPublicKeys", {}).items():
            if entry.get("key", "").strip() == public_key:
                return fingerprint[:KEY_ID_LENGTH]
        if self.dry_run:
            return "dry-run-key"
        raise ProvisionError("OS Login did not report the registered key")

    async def _run_local(self, cmd, action):
        rc, _, stderr = await run_shell_cmd(cmd, dry_run=self.dry_run)
        if rc != 0:
            raise ConfigurationError(f"{action} failed: {stderr.strip()}")

    def _remember_user(self, profile):
        accounts = profile.get("posixAccounts", [])
        if not accounts or self.dry_run:
            return
        os.makedirs(self.profile_dir, exist_ok=True)
        with open(os.path.join(self.profile_dir, OSLOGIN_USER_FILE), "w") as f:
            f.write(accounts[0]["username"])

    def _login_user(self):
        if self.ssh_user:
            return self.ssh_user
        path = os.path.join(self.profile_dir, OSLOGIN_USER_FILE)
        if not os.path.exists(path):
            raise ConfigurationError("OS Login user unknown. Set 'gce.ssh_user' or run 'previewdock up' once.")
        with open(path) as f:
            return f.read().strip()

    # ── Contract ───────────────────────────────────────────────────

    async def provision(self, env_id, sizing=None):
        """Create the environment's instance, or return the live one.

        Steps:
            1. Look up an existing instance labeled with env_id
            2. Ensure the OS Login key pair
            3. gcloud compute instances create
            4. Wait for RUNNING status
        """
        async for machine in self.list_machines(MachineFilter(env_id=env_id)):
            logger.info(f"Instance '{machine.provider_id}' already exists for {env_id}")
            if machine.status == "RUNNING" and machine.address is not None:
                return machine
            await self.wait_for_status(machine.provider_id, "RUNNING")
            return await self._listed_machine(env_id, machine.provider_id)

        key_id = await self._ensure_key_pair()
        name = instance_name(env_id)
        labels = {LABEL_MANAGED: "true", LABEL_ENV: env_id, LABEL_KEY: key_id}
        cmd = _gcloud_create_cmd(
            name,
            self.project,
            self.zone,
            (sizing and sizing.machine_type) or self.machine_type,
            labels,
            image_family=self.image_family,
            image_project=self.image_project,
            disk_size_gb=(sizing and sizing.disk_size_gb) or self.disk_size_gb,
            source_snapshot=sizing.from_snapshot if sizing else None,
        )
        logger.info(f"Creating instance '{name}' in zone '{self.zone}'...")
        created = _parse_json(await self._gcloud(cmd, f"create instance {name}"))
        if self.dry_run:
            return Machine(
                provider_id=name,
                env_id=env_id,
                address=MachineAddress("dry-run-gce-host", 22),
                location=self.zone,
                instance_type=self.machine_type,
                status="RUNNING",
                key_pair_id=key_id,
            )

        await self.wait_for_status(name, "RUNNING")
        if created:
            machine = _machine_from_instance(created[0])
            if machine.address is not None:
                return machine
        return await self._listed_machine(env_id, name)

    async def _listed_machine(self, env_id, name):
        async for machine in self.list_machines(MachineFilter(env_id=env_id)):
            if machine.address is not None:
                return machine
            raise ProvisionError(f"Instance '{name}' is RUNNING but has no external IP yet")
        raise ProvisionError(f"Instance '{name}' was created but is not listed")

    async def wait_for_status(self, instance, target_status, timeout=None):
        """Poll instance status until it matches target_status.

        Raises:
            ProvisionError: not reached within *timeout* (default ready_timeout); retryable.
        """
        timeout = self.ready_timeout if timeout is None else timeout
        elapsed = 0
        status = ""
        while elapsed < timeout:
            status = (await self._gcloud(_gcloud_status_cmd(instance, self.project, self.zone), "describe instance")).strip()
            if status == target_status:
                return
            await asyncio.sleep(self.poll_interval)
            elapsed += self.poll_interval
        raise ProvisionError(f"Timeout after {timeout}s waiting for status '{target_status}' (last: '{status}')")

    async def list_machines(self, machine_filter=None):
        machine_filter = machine_filter or MachineFilter()
        instances = _parse_json(await self._gcloud(_gcloud_list_cmd(self.project), "list instances"))
        for instance in instances:
            machine = _machine_from_instance(instance)
            if machine_filter.matches(machine):
                yield machine

    async def list_deletable_resources(self, kinds=None):
        kinds = set(kinds) if kinds is not None else ALL_KINDS
        if ResourceKind.MACHINE in kinds:
            async for machine in self.list_machines():
                yield DeletableResource.of(machine)
        if ResourceKind.SNAPSHOT in kinds:
            for snapshot in _parse_json(await self._gcloud(_gcloud_snapshot_list_cmd(self.project), "list snapshots")):
                yield DeletableResource.of(_snapshot_from_json(snapshot))
        if ResourceKind.KEYPAIR in kinds:
            profile = _parse_json(await self._gcloud(_gcloud_oslogin_profile_cmd(), "describe OS Login profile")) or {}
            for key_pair in _key_pairs_from_profile(profile, self.private_key_path):
                yield DeletableResource.of(key_pair)

    async def delete_resource(self, resource, wait=False, strict=False):
        if resource.kind is ResourceKind.MACHINE:
            zone = resource.resource.location or self.zone
            cmd = _gcloud_delete_cmd(resource.provider_id, self.project, zone, wait=wait)
        elif resource.kind is ResourceKind.SNAPSHOT:
            cmd = _gcloud_snapshot_delete_cmd(resource.provider_id, self.project, wait=wait)
        else:
            cmd = _gcloud_oslogin_remove_cmd(resource.resource.fingerprint or resource.provider_id)
        try:
            await self._gcloud(cmd, f"delete {resource.kind.value} {resource.provider_id}")
        except ResourceNotFoundError:
            if strict:
                raise
            logger.info(f"{resource.kind.value} {resource.provider_id} already gone.")

    async def create_snapshot(self, machine, name=None):
        name = name or f"{machine.provider_id}-{datetime.now():%Y%m%d%H%M%S}"
        labels = {LABEL_MANAGED: "true"}
        if machine.env_id:
            labels[LABEL_ENV] = machine.env_id
        zone = machine.location or self.zone
        cmd = _gcloud_snapshot_create_cmd(name, machine.provider_id, self.project, zone, labels)
        created = _parse_json(await self._gcloud(cmd, f"snapshot {machine.provider_id}", timeout=1800))
        if created:
            return _snapshot_from_json(created[0])
        return Snapshot(provider_id=name, source_env_id=machine.env_id, location=zone, status="CREATING")

    def connection_params(self, machine):
        if machine.address is None:
            raise ConfigurationError(f"Instance '{machine.provider_id}' has no external IP")
        return ConnectionParams(
            address=SshAddress(machine.address.host, machine.address.port, self._login_user()),
            auth=KeyAuth(self.private_key_path),
        )
