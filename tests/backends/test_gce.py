"""Tests for the GCE backend with gcloud mocked out."""

import json
import logging
from unittest import mock

import pytest

from previewdock.backends.gce import (
    KEY_FILE,
    LABEL_ENV,
    LABEL_KEY,
    OSLOGIN_USER_FILE,
    GceBackend,
    _gcloud_create_cmd,
    _gcloud_delete_cmd,
    _gcloud_list_cmd,
    _key_pairs_from_profile,
    _machine_from_instance,
    _snapshot_from_json,
    classify_gcloud_error,
    instance_name,
)
from previewdock.driver.machine_driver import MachineDriver
from previewdock.driver.types import DeletableResource, KeyAuth, MachineFilter, ResourceKind, SizingHints, SshAddress
from previewdock.errors import (
    AuthenticationError,
    ConfigurationError,
    ProvisionError,
    QuotaError,
    ResourceNotFoundError,
)
from previewdock.retry import RetryConfig

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFake previewdock"
FINGERPRINT = "a" * 64

INSTANCE = {
    "name": "previewdock-proj-abc123",
    "zone": "https://www.googleapis.com/compute/v1/projects/p/zones/us-central1-a",
    "machineType": "https://www.googleapis.com/compute/v1/projects/p/zones/us-central1-a/machineTypes/e2-standard-2",
    "status": "RUNNING",
    "creationTimestamp": "2024-05-01T10:00:00.000-07:00",
    "labels": {"previewdock": "true", LABEL_ENV: "proj-abc123", LABEL_KEY: FINGERPRINT[:32]},
    "networkInterfaces": [{"accessConfigs": [{"natIP": "34.1.2.3"}]}],
}

UNTAGGED_INSTANCE = {
    "name": "previewdock-manual",
    "zone": "zones/us-central1-a",
    "status": "TERMINATED",
    "networkInterfaces": [],
}

PROFILE = {
    "name": "user@example.com",
    "posixAccounts": [{"username": "user_example_com"}],
    "sshPublicKeys": {
        FINGERPRINT: {"key": PUBLIC_KEY, "fingerprint": FINGERPRINT},
        "b" * 64: {"key": "ssh-rsa AAAAB3 someone@laptop", "fingerprint": "b" * 64},
    },
}


# ── Command builders ──────────────────────────────────────────────


def test_create_cmd_from_image():
    cmd = _gcloud_create_cmd("inst", "proj", "us-central1-a", "e2-standard-2", {"a": "1", "b": "2"}, disk_size_gb=50)
    assert cmd[:5] == ["gcloud", "compute", "instances", "create", "inst"]
    assert cmd[cmd.index("--image-family") + 1] == "ubuntu-2204-lts"
    assert cmd[cmd.index("--boot-disk-size") + 1] == "50GB"
    assert cmd[cmd.index("--labels") + 1] == "a=1,b=2"
    assert "--source-snapshot" not in cmd
    assert cmd[-1] == "--format=json"


def test_create_cmd_from_snapshot():
    cmd = _gcloud_create_cmd("inst", "proj", "zone", "e2-small", {}, source_snapshot="snap-1")
    assert cmd[cmd.index("--source-snapshot") + 1] == "snap-1"
    assert "--image-family" not in cmd


def test_list_cmd_includes_untagged_by_name():
    cmd = _gcloud_list_cmd("proj")
    assert "--filter=labels.previewdock:* OR name~^previewdock-" in cmd


def test_delete_cmd_async_without_wait():
    assert "--async" in _gcloud_delete_cmd("inst", "proj", "zone", wait=False)
    assert "--async" not in _gcloud_delete_cmd("inst", "proj", "zone", wait=True)


def test_instance_name_bounded():
    assert instance_name("proj-abc123") == "previewdock-proj-abc123"
    assert len(instance_name("x" * 80)) <= 63


# ── Error classification ──────────────────────────────────────────


@pytest.mark.parametrize(
    "stderr,error_type",
    [
        ("ERROR: (gcloud.compute.instances.create) ZONE_RESOURCE_POOL_EXHAUSTED", ProvisionError),
        ("Quota 'CPUS' exceeded.  Limit: 24.0 in region us-central1.", QuotaError),
        ("The resource 'projects/p/zones/z/instances/x' was not found", ResourceNotFoundError),
        ("Required 'compute.instances.create' permission for 'projects/p' PERMISSION_DENIED", AuthenticationError),
        ("You do not currently have an active account selected.", AuthenticationError),
        ("Invalid value for field 'resource.machineType'", ConfigurationError),
        ("something unexpected", ProvisionError),
    ],
)
def test_classify_gcloud_error(stderr, error_type):
    error = classify_gcloud_error(stderr, "create instance x")
    assert type(error) is error_type
    assert "create instance x" in str(error)


# ── Parsing ───────────────────────────────────────────────────────


def test_machine_from_instance():
    machine = _machine_from_instance(INSTANCE)
    assert machine.provider_id == "previewdock-proj-abc123"
    assert machine.env_id == "proj-abc123"
    assert machine.address.host == "34.1.2.3"
    assert machine.location == "us-central1-a"
    assert machine.instance_type == "e2-standard-2"
    assert machine.key_pair_id == FINGERPRINT[:32]
    assert machine.created_at is not None


def test_untagged_instance_has_no_env():
    machine = _machine_from_instance(UNTAGGED_INSTANCE)
    assert machine.env_id is None
    assert machine.address is None


def test_snapshot_from_json():
    snapshot = _snapshot_from_json(
        {"name": "snap-1", "labels": {LABEL_ENV: "env-a"}, "diskSizeGb": "30", "storageLocations": ["us"], "status": "READY"}
    )
    assert (snapshot.provider_id, snapshot.source_env_id, snapshot.size_gb, snapshot.location) == ("snap-1", "env-a", 30.0, "us")


def test_key_pairs_only_ours():
    key_pairs = _key_pairs_from_profile(PROFILE, "/p/gce_ed25519")
    assert [k.provider_id for k in key_pairs] == [FINGERPRINT[:32]]
    assert key_pairs[0].fingerprint == FINGERPRINT


# ── Backend with gcloud mocked ────────────────────────────────────


def test_requires_project_and_zone(tmp_path):
    with pytest.raises(ConfigurationError, match="project"):
        GceBackend(zone="z", profile_dir=str(tmp_path))
    with pytest.raises(ConfigurationError, match="zone"):
        GceBackend(project="p", profile_dir=str(tmp_path))


class Gcloud:
    """Scripted gcloud: instances listed, profile described, create recorded."""

    def __init__(self, instances=(), profile=PROFILE, status="RUNNING"):
        self.instances = list(instances)
        self.profile = profile
        self.status = status
        self.commands = []
        self.fail = {}

    async def __call__(self, cmd, dry_run=False, timeout=600):
        self.commands.append(cmd)
        verb = " ".join(cmd[1:4])
        if verb in self.fail:
            return 1, "", self.fail[verb]
        if cmd[0] == "ssh-keygen":
            path = cmd[cmd.index("-f") + 1]
            with open(f"{path}.pub", "w") as f:
                f.write(PUBLIC_KEY)
            return 0, "", ""
        if verb == "compute instances list":
            return 0, json.dumps(self.instances), ""
        if verb == "compute instances create":
            self.instances.append(INSTANCE)
            return 0, json.dumps([INSTANCE]), ""
        if verb == "compute instances describe":
            return 0, f"{self.status}\n", ""
        if verb == "compute os-login describe-profile":
            return 0, json.dumps(self.profile), ""
        return 0, "", ""


@pytest.fixture
def gcloud():
    script = Gcloud()
    with mock.patch("previewdock.backends.gce.run_shell_cmd", new=script):
        yield script


@pytest.fixture
def backend(tmp_path):
    return GceBackend(project="proj", zone="us-central1-a", profile_dir=str(tmp_path), poll_interval=0)


async def test_provision_creates_and_registers_key(backend, gcloud, tmp_path):
    machine = await backend.provision("proj-abc123", SizingHints(machine_type="e2-medium"))

    assert machine.provider_id == "previewdock-proj-abc123"
    assert machine.address.host == "34.1.2.3"
    create = next(c for c in gcloud.commands if c[1:4] == ["compute", "instances", "create"])
    assert create[create.index("--machine-type") + 1] == "e2-medium"
    labels = create[create.index("--labels") + 1]
    assert f"{LABEL_ENV}=proj-abc123" in labels
    assert f"{LABEL_KEY}={FINGERPRINT[:32]}" in labels
    assert (tmp_path / OSLOGIN_USER_FILE).read_text() == "user_example_com"
    assert not any(c[1:4] == ["compute", "os-login", "ssh-keys"] for c in gcloud.commands)


async def test_provision_is_idempotent(backend, gcloud):
    gcloud.instances.append(INSTANCE)
    machine = await backend.provision("proj-abc123")
    assert machine.env_id == "proj-abc123"
    assert not any(c[1:4] == ["compute", "instances", "create"] for c in gcloud.commands)


async def test_provision_waits_for_existing_instance(backend, gcloud):
    gcloud.instances.append({**INSTANCE, "status": "STAGING"})
    machine = await backend.provision("proj-abc123")
    assert machine.address.host == "34.1.2.3"
    assert any(c[1:4] == ["compute", "instances", "describe"] for c in gcloud.commands)
    assert not any(c[1:4] == ["compute", "instances", "create"] for c in gcloud.commands)


async def test_existing_instance_never_running(tmp_path, gcloud):
    backend = GceBackend(project="proj", zone="us-central1-a", profile_dir=str(tmp_path), poll_interval=0, ready_timeout=0)
    gcloud.instances.append({**INSTANCE, "status": "STAGING"})
    gcloud.status = "STAGING"
    driver = MachineDriver(backend, retry=RetryConfig(max_attempts=2, base_delay=0, max_delay=0))

    with pytest.raises(ProvisionError, match="RUNNING"):
        await driver.provision("proj-abc123")

    assert not any(c[1:4] == ["compute", "instances", "create"] for c in gcloud.commands)


async def test_running_instance_without_ip_is_not_returned(backend, gcloud):
    gcloud.instances.append({**INSTANCE, "networkInterfaces": []})
    with pytest.raises(ProvisionError, match="external IP"):
        await backend.provision("proj-abc123")


async def test_provision_quota_error(backend, gcloud):
    gcloud.fail["compute instances create"] = "Quota 'CPUS' exceeded."
    with pytest.raises(QuotaError):
        await backend.provision("proj-abc123")


async def test_list_filters_and_untagged(backend, gcloud):
    gcloud.instances.extend([INSTANCE, UNTAGGED_INSTANCE])
    everything = [m async for m in backend.list_machines()]
    assert {m.provider_id for m in everything} == {"previewdock-proj-abc123", "previewdock-manual"}
    only = [m async for m in backend.list_machines(MachineFilter(env_id="proj-abc123"))]
    assert [m.provider_id for m in only] == ["previewdock-proj-abc123"]


async def test_list_deletable_resources_key_pairs(backend, gcloud):
    resources = [r async for r in backend.list_deletable_resources([ResourceKind.KEYPAIR])]
    assert [r.provider_id for r in resources] == [FINGERPRINT[:32]]
    assert resources[0].resource.private_key_path.endswith(KEY_FILE)


async def test_delete_missing_instance(backend, gcloud):
    resource = DeletableResource.of(_machine_from_instance(INSTANCE))
    gcloud.fail["compute instances delete"] = "The resource 'previewdock-proj-abc123' was not found"
    await backend.delete_resource(resource)
    with pytest.raises(ResourceNotFoundError):
        await backend.delete_resource(resource, strict=True)


async def test_delete_key_pair_by_fingerprint(backend, gcloud):
    key_pair = _key_pairs_from_profile(PROFILE)[0]
    await backend.delete_resource(DeletableResource.of(key_pair))
    assert gcloud.commands[-1] == ["gcloud", "compute", "os-login", "ssh-keys", "remove", "--key", FINGERPRINT]


def test_connection_params(backend, tmp_path):
    (tmp_path / OSLOGIN_USER_FILE).write_text("user_example_com")
    params = backend.connection_params(_machine_from_instance(INSTANCE))
    assert params.address == SshAddress("34.1.2.3", 22, "user_example_com")
    assert params.auth == KeyAuth(str(tmp_path / KEY_FILE))


def test_connection_params_without_ip(backend):
    with pytest.raises(ConfigurationError, match="external IP"):
        backend.connection_params(_machine_from_instance(UNTAGGED_INSTANCE))


async def test_dry_run_logs_commands(tmp_path, caplog):
    backend = GceBackend(project="proj", zone="us-central1-a", profile_dir=str(tmp_path), dry_run=True)
    with caplog.at_level(logging.INFO):
        machine = await backend.provision("proj-abc123")
    assert machine.env_id == "proj-abc123"
    assert "[dry-run] gcloud compute instances create previewdock-proj-abc123" in caplog.text
    assert not (tmp_path / KEY_FILE).exists()
