"""Fire-and-forget usage telemetry.

Events go into a bounded queue and are posted in batches by a background task
once no new event arrived for ``debounce`` seconds (at most ``max_wait``
after the first pending one). Nothing here is awaited on the provisioning or
teardown path, and failures are only logged at DEBUG.
"""

import asyncio
import logging
import os
import platform
import secrets
import sys
import uuid
from datetime import datetime, timezone

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TELEMETRY_URL = "https://telemetry.previewdock.dev/v1/event"
DEFAULT_DEBOUNCE = 3.0
DEFAULT_MAX_WAIT = 8.0
DEFAULT_MAX_QUEUE = 1000
MACHINE_ID_FILE = "machine_id"

_CI_PROVIDERS = {
    "GITHUB_ACTIONS": "github-actions",
    "GITLAB_CI": "gitlab",
    "CIRCLECI": "circleci",
    "TRAVIS": "travis",
    "JENKINS_URL": "jenkins",
    "BUILDKITE": "buildkite",
}


def new_run_id():
    return "ses_" + "".join(c for c in secrets.token_urlsafe(16) if c.isalnum())[:10]


def machine_id(profile_dir):
    """Anonymous id persisted in the profile dir, created on first use."""
    path = os.path.join(profile_dir, MACHINE_ID_FILE)
    try:
        with open(path) as f:
            value = f.read().strip()
        if value:
            return value
    except FileNotFoundError:
        pass
    value = uuid.uuid4().hex
    os.makedirs(profile_dir, exist_ok=True)
    with open(path, "w") as f:
        f.write(value)
    return value


def detect_ci_provider(environ=None):
    environ = os.environ if environ is None else environ
    for var, name in _CI_PROVIDERS.items():
        if environ.get(var):
            return name
    return None


class TelemetryEmitter:
    """Batches events and posts them to the telemetry endpoint.

    Args:
        profile_dir: where the machine id is kept.
        version: previewdock version reported with every event.
        url: batch endpoint; receives ``{"batch": [event, ...]}``.
        transport: optional httpx transport (tests).
    """

    def __init__(
        self,
        profile_dir,
        version,
        url=DEFAULT_TELEMETRY_URL,
        debounce=DEFAULT_DEBOUNCE,
        max_wait=DEFAULT_MAX_WAIT,
        max_queue=DEFAULT_MAX_QUEUE,
        transport=None,
    ):
        self.url = url
        self.debounce = debounce
        self.max_wait = max_wait
        self.machine_id = machine_id(profile_dir)
        self.distinct_id = self.machine_id
        self.run_id = new_run_id()
        self.groups: dict[str, str] = {}
        self._transport = transport
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self._activity = asyncio.Event()
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self.dropped = 0
        ci_provider = detect_ci_provider()
        self.common_properties = {
            "platform": sys.platform,
            "arch": platform.machine(),
            "versions": {"python": platform.python_version(), "os_release": platform.release()},
            "is_ci": bool(os.environ.get("CI")) or ci_provider is not None,
            "ci_provider": ci_provider,
            "version": version,
            "$device_id": self.machine_id,
            "run_id": self.run_id,
        }

    # ── Event API ──────────────────────────────────────────────────

    def _push(self, event):
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug(f"Telemetry queue full, dropping '{event['event']}'")
            return
        self._activity.set()
        self._ensure_task()

    def _event(self, name, properties, **extra):
        return {
            "event": name,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "distinct_id": self.distinct_id,
            "properties": {**properties, **self.common_properties},
            **extra,
        }

    def capture(self, event, props=None):
        self._push(self._event(event, {"$groups": dict(self.groups), **(props or {})}))

    def identify(self, distinct_id=None, person=None):
        """Link the anonymous machine id to *distinct_id* and/or set person props."""
        relink = distinct_id is not None and distinct_id != self.distinct_id
        if relink or person:
            properties = {"$anon_distinct_id": self.distinct_id} if relink else {}
            event = self._event("$identify", properties, **({"$set": person} if person else {}))
            event["distinct_id"] = distinct_id or self.distinct_id
            self._push(event)
        if distinct_id:
            self.distinct_id = distinct_id

    def group(self, group_type, group_id=None, props=None):
        if group_id:
            self.groups[group_type] = group_id
        current = self.groups.get(group_type)
        if current:
            self._push(
                self._event(
                    "$groupidentify",
                    {"$group_type": group_type, "$group_key": current, "$group_set": {"name": current, **(props or {})}},
                )
            )

    def set_props(self, props):
        """Add properties sent with every later event."""
        self.common_properties.update(props)

    # ── Background flushing ────────────────────────────────────────

    def _ensure_task(self):
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        loop = asyncio.get_running_loop()
        while True:
            await self._activity.wait()
            first = loop.time()
            while True:
                self._activity.clear()
                remaining = first + self.max_wait - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(self._activity.wait(), timeout=min(self.debounce, remaining))
                except TimeoutError:
                    break
            await self.flush()

    async def flush(self):
        """Post every queued event in one batch."""
        async with self._flush_lock:
            batch = []
            while not self._queue.empty():
                batch.append(self._queue.get_nowait())
            if not batch:
                return
            try:
                async with httpx.AsyncClient(transport=self._transport, timeout=5) as client:
                    resp = await client.post(self.url, json={"batch": batch})
                if resp.status_code >= 400:
                    logger.debug(f"Error sending telemetry: {resp.status_code} {resp.url}")
            except httpx.HTTPError as e:
                logger.debug(f"Error sending telemetry: {e}")

    async def shutdown(self, timeout=2.0):
        """Stop the background task and drain what is queued, bounded by *timeout*."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        try:
            await asyncio.wait_for(self.flush(), timeout=timeout)
        except TimeoutError:
            logger.debug("Telemetry flush timed out")


class NullTelemetryEmitter:
    """Used when telemetry is disabled."""

    def capture(self, event, props=None):
        pass

    def identify(self, distinct_id=None, person=None):
        pass

    def group(self, group_type, group_id=None, props=None):
        pass

    def set_props(self, props):
        pass

    async def flush(self):
        pass

    async def shutdown(self, timeout=2.0):
        pass


def create_emitter(config, version):
    if not config.get("telemetry"):
        return NullTelemetryEmitter()
    return TelemetryEmitter(config["profile_dir"], version, url=config.get("telemetry_url") or DEFAULT_TELEMETRY_URL)
