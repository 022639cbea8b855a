"""Tests for the batching telemetry emitter."""

import asyncio
import json

import httpx
import pytest

from previewdock.telemetry import (
    NullTelemetryEmitter,
    TelemetryEmitter,
    create_emitter,
    detect_ci_provider,
    machine_id,
    new_run_id,
)

URL = "https://telemetry.example.com/v1/event"


class Collector:
    def __init__(self, status=200):
        self.batches = []
        self.status = status

    def __call__(self, request):
        self.batches.append(json.loads(request.content)["batch"])
        return httpx.Response(self.status)


@pytest.fixture
def collector():
    return Collector()


@pytest.fixture
def emitter(tmp_path, collector):
    return TelemetryEmitter(str(tmp_path), "1.2.3", url=URL, debounce=0.01, max_wait=0.05, transport=httpx.MockTransport(collector))


def test_machine_id_is_persisted(tmp_path):
    first = machine_id(str(tmp_path / "profile"))
    assert machine_id(str(tmp_path / "profile")) == first
    assert (tmp_path / "profile" / "machine_id").read_text() == first


def test_run_id_format():
    run_id = new_run_id()
    assert run_id.startswith("ses_")
    assert len(run_id) == 14


def test_detect_ci_provider():
    assert detect_ci_provider({"GITHUB_ACTIONS": "true"}) == "github-actions"
    assert detect_ci_provider({}) is None


async def test_events_are_batched(emitter, collector):
    emitter.capture("env up", {"backend": "fake"})
    emitter.capture("env down")
    await emitter.shutdown()

    assert len(collector.batches) == 1
    events = collector.batches[0]
    assert [e["event"] for e in events] == ["env up", "env down"]
    props = events[0]["properties"]
    assert props["backend"] == "fake"
    assert props["version"] == "1.2.3"
    assert props["run_id"] == emitter.run_id
    assert events[0]["distinct_id"] == emitter.machine_id


async def test_background_flush_after_debounce(emitter, collector):
    emitter.capture("env up")
    for _ in range(50):
        await asyncio.sleep(0.01)
        if collector.batches:
            break
    assert [e["event"] for e in collector.batches[0]] == ["env up"]
    await emitter.shutdown()


async def test_identify_and_group(emitter, collector):
    anonymous = emitter.distinct_id
    emitter.identify("user-42", {"email": "dev@example.com"})
    emitter.group("profile", "team-a")
    emitter.capture("ls")
    await emitter.shutdown()

    identify, group, capture = collector.batches[0]
    assert identify["event"] == "$identify"
    assert identify["distinct_id"] == "user-42"
    assert identify["properties"]["$anon_distinct_id"] == anonymous
    assert identify["$set"] == {"email": "dev@example.com"}
    assert group["event"] == "$groupidentify"
    assert group["properties"]["$group_key"] == "team-a"
    assert capture["distinct_id"] == "user-42"
    assert capture["properties"]["$groups"] == {"profile": "team-a"}


async def test_full_queue_drops_events(tmp_path, collector):
    emitter = TelemetryEmitter(str(tmp_path), "1.0", url=URL, max_queue=2, transport=httpx.MockTransport(collector))
    for i in range(5):
        emitter.capture(f"e{i}")
    assert emitter.dropped == 3
    await emitter.shutdown()
    assert [e["event"] for e in collector.batches[0]] == ["e0", "e1"]


async def test_endpoint_errors_are_not_raised(tmp_path):
    def broken(request):
        raise httpx.ConnectError("down", request=request)

    emitter = TelemetryEmitter(str(tmp_path), "1.0", url=URL, transport=httpx.MockTransport(broken))
    emitter.capture("env up")
    await emitter.shutdown()


def test_create_emitter_disabled_by_default(tmp_path):
    assert isinstance(create_emitter({"telemetry": False, "profile_dir": str(tmp_path)}, "1.0"), NullTelemetryEmitter)
    assert not (tmp_path / "machine_id").exists()
