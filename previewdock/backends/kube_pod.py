"""Kubernetes backend: one docker-in-docker Deployment per preview environment.

Talks to the Kubernetes REST API with httpx. There are no snapshots or key
pairs here; kubeconfig credentials authenticate both the API calls and
``kubectl exec``.
"""

import asyncio
import logging
from datetime import datetime

import httpx

from previewdock.backends.kubeconfig import load_kubeconfig
from previewdock.driver.types import (
    ALL_KINDS,
    ConnectionParams,
    DeletableResource,
    KubeconfigAuth,
    Machine,
    MachineFilter,
    PodAddress,
    ResourceKind,
)
from previewdock.errors import (
    AuthenticationError,
    ConfigurationError,
    ProvisionError,
    QuotaError,
    ResourceNotFoundError,
    UnreachableError,
)

logger = logging.getLogger(__name__)

MANAGED_LABEL = "app.kubernetes.io/managed-by"
MANAGED_VALUE = "previewdock"
ENV_LABEL = "previewdock.dev/env-id"
CONTAINER_NAME = "dind"
DEFAULT_IMAGE = "docker:27-dind"
NAME_PREFIX = "previewdock-"


def deployment_name(env_id):
    return f"{NAME_PREFIX}{env_id}"[:63].rstrip("-")


def deployment_manifest(name, namespace, env_id, image=DEFAULT_IMAGE, sizing=None):
    """Deployment running a privileged docker daemon for the environment."""
    labels = {MANAGED_LABEL: MANAGED_VALUE, ENV_LABEL: env_id}
    volume = {"name": "docker", "emptyDir": {}}
    if sizing is not None and sizing.disk_size_gb:
        volume["emptyDir"]["sizeLimit"] = f"{sizing.disk_size_gb}Gi"
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": namespace, "labels": labels},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [
                        {
                            "name": CONTAINER_NAME,
                            "image": image,
                            "securityContext": {"privileged": True},
                            "env": [{"name": "DOCKER_TLS_CERTDIR", "value": ""}],
                            "volumeMounts": [{"name": "docker", "mountPath": "/var/lib/docker"}],
                        }
                    ],
                    "volumes": [volume],
                },
            },
        },
    }


def classify_http_error(status_code, message, action):
    """Map a Kubernetes API error status into the error taxonomy."""
    text = f"{action} failed ({status_code}): {message}"
    if status_code == 404:
        return ResourceNotFoundError(text)
    if status_code == 403 and "exceeded quota" in message:
        return QuotaError(text)
    if status_code in (401, 403):
        return AuthenticationError(text)
    if status_code in (400, 422):
        return ConfigurationError(text)
    return ProvisionError(text)


def _machine_from_deployment(deployment, namespace) -> Machine:
    meta = deployment.get("metadata", {})
    labels = meta.get("labels", {})
    status = deployment.get("status", {})
    containers = deployment.get("spec", {}).get("template", {}).get("spec", {}).get("containers", [])
    created = meta.get("creationTimestamp")
    return Machine(
        provider_id=meta["name"],
        env_id=labels.get(ENV_LABEL),
        created_at=datetime.fromisoformat(created.replace("Z", "+00:00")) if created else None,
        location=namespace,
        instance_type=containers[0].get("image", "") if containers else "",
        status="ready" if status.get("readyReplicas", 0) >= 1 else "pending",
        metadata={"labels": labels},
    )


class KubePodBackend:
    """Pod-style adapter.

    Args:
        namespace: namespace for environments; defaults to the context's.
        kubeconfig: kubeconfig path; defaults to $KUBECONFIG or ~/.kube/config.
        context: kubeconfig context; defaults to current-context.
        transport: optional httpx transport (tests use httpx.MockTransport).
    """

    name = "kube-pod"

    def __init__(
        self,
        namespace=None,
        kubeconfig=None,
        context=None,
        image=DEFAULT_IMAGE,
        ready_timeout=300,
        poll_interval=2,
        transport=None,
    ):
        self.credentials = load_kubeconfig(kubeconfig, context)
        self.namespace = namespace or self.credentials.namespace
        self.image = image
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self._transport = transport

    # ── API helpers ────────────────────────────────────────────────

    async def _api_request(self, method, path, data=None, params=None, action=None):
        """Make an authenticated Kubernetes API request.

        Returns:
            Parsed JSON response dict.
        """
        action = action or f"{method} {path}"
        headers = {**self.credentials.headers, "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.credentials.server,
                verify=self.credentials.verify,
                transport=self._transport,
                timeout=60,
            ) as client:
                resp = await client.request(method, path, json=data, params=params, headers=headers)
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise UnreachableError(f"Cannot reach Kubernetes API server {self.credentials.server}: {e}") from e
        except httpx.TransportError as e:
            raise ProvisionError(f"{action} failed: {e}") from e

        if resp.status_code >= 400:
            try:
                message = resp.json().get("message", resp.text)
            except ValueError:
                message = resp.text
            raise classify_http_error(resp.status_code, message, action)
        return resp.json()

    def _deployments_path(self, name=None):
        path = f"/apis/apps/v1/namespaces/{self.namespace}/deployments"
        return f"{path}/{name}" if name else path

    async def _get_deployment(self, name):
        return await self._api_request("GET", self._deployments_path(name), action=f"get deployment {name}")

    # ── Core logic ─────────────────────────────────────────────────

    async def wait_for_ready(self, name):
        """Poll the deployment until one replica is ready.

        Raises:
            ProvisionError: not ready within ready_timeout (retryable).
        """
        elapsed = 0
        while elapsed < self.ready_timeout:
            deployment = await self._get_deployment(name)
            if deployment.get("status", {}).get("readyReplicas", 0) >= 1:
                return deployment
            await asyncio.sleep(self.poll_interval)
            elapsed += self.poll_interval
        raise ProvisionError(f"Timeout after {self.ready_timeout}s waiting for deployment '{name}' to become ready")

    async def wait_for_deletion(self, name):
        elapsed = 0
        while elapsed < self.ready_timeout:
            try:
                await self._get_deployment(name)
            except ResourceNotFoundError:
                return
            await asyncio.sleep(self.poll_interval)
            elapsed += self.poll_interval
        raise ProvisionError(f"Timeout after {self.ready_timeout}s waiting for deployment '{name}' to be deleted")

    # ── Contract ───────────────────────────────────────────────────

    async def provision(self, env_id, sizing=None):
        if sizing is not None and sizing.from_snapshot:
            raise ConfigurationError("kube-pod backend does not support snapshots")

        async for machine in self.list_machines(MachineFilter(env_id=env_id)):
            logger.info(f"Deployment '{machine.provider_id}' already exists for {env_id}")
            if machine.status == "ready":
                return machine
            logger.info(f"Waiting for deployment '{machine.provider_id}' to become ready (timeout: {self.ready_timeout}s)...")
            deployment = await self.wait_for_ready(machine.provider_id)
            return _machine_from_deployment(deployment, self.namespace)

        name = deployment_name(env_id)
        logger.info(f"Creating deployment '{name}' in namespace '{self.namespace}'...")
        manifest = deployment_manifest(name, self.namespace, env_id, self.image, sizing)
        await self._api_request("POST", self._deployments_path(), data=manifest, action=f"create deployment {name}")

        logger.info(f"Waiting for deployment '{name}' to become ready (timeout: {self.ready_timeout}s)...")
        deployment = await self.wait_for_ready(name)
        return _machine_from_deployment(deployment, self.namespace)

    async def list_machines(self, machine_filter=None):
        """Managed deployments plus out-of-band ones named like ours (untagged)."""
        machine_filter = machine_filter or MachineFilter()
        result = await self._api_request("GET", self._deployments_path(), action="list deployments")
        for deployment in result.get("items", []):
            meta = deployment.get("metadata", {})
            managed = meta.get("labels", {}).get(MANAGED_LABEL) == MANAGED_VALUE
            if not managed and not meta.get("name", "").startswith(NAME_PREFIX):
                continue
            machine = _machine_from_deployment(deployment, self.namespace)
            if machine_filter.matches(machine):
                yield machine

    async def list_deletable_resources(self, kinds=None):
        kinds = set(kinds) if kinds is not None else ALL_KINDS
        if ResourceKind.MACHINE not in kinds:
            return
        async for machine in self.list_machines():
            yield DeletableResource.of(machine)

    async def delete_resource(self, resource, wait=False, strict=False):
        if resource.kind is not ResourceKind.MACHINE:
            raise ConfigurationError(f"kube-pod backend has no {resource.kind.value} resources")
        name = resource.provider_id
        try:
            await self._api_request(
                "DELETE",
                self._deployments_path(name),
                data={"propagationPolicy": "Foreground"},
                action=f"delete deployment {name}",
            )
        except ResourceNotFoundError:
            if strict:
                raise
            logger.info(f"Deployment {name} already gone.")
            return
        if wait:
            await self.wait_for_deletion(name)

    async def create_snapshot(self, machine, name=None):
        raise ConfigurationError("kube-pod backend does not support snapshots")

    def connection_params(self, machine):
        return ConnectionParams(
            address=PodAddress(
                namespace=self.namespace,
                pod=f"deploy/{machine.provider_id}",
                container=CONTAINER_NAME,
                api_server=self.credentials.server,
            ),
            auth=KubeconfigAuth(self.credentials.path, self.credentials.context),
        )
