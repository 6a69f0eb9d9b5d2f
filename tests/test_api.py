import time

import pytest
from fastapi.testclient import TestClient

from billsync.api.app import create_app
from billsync.core.bootstrap import SyncRuntime
from billsync.core.config import SyncSettings
from billsync.models.records import DeliveryOutcome
from billsync.models.sync import CoordinatorState

from fakes import InMemorySource, MemoryWatermarkStore, RecordingTarget, entry, make_config


@pytest.fixture
def runtime():
    settings = SyncSettings(
        source_url="sqlite://",
        target_url="https://tt.example.com",
        target_api_key="secret",
        config_file="unused.json",
    )
    return SyncRuntime(
        settings,
        make_config(),
        source=InMemorySource([entry(101), entry(102)]),
        target=RecordingTarget(),
        watermark_store=MemoryWatermarkStore(initial=100),
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime_factory=lambda: runtime, start_loop=False)) as client:
        yield client


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "checks": {"source": True, "target": True, "coordinator": True}}


def test_health_reports_unreachable_target(client, runtime):
    runtime.target.connected = False
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["checks"]["target"] is False


def test_manual_sync_runs_inline(client, runtime):
    response = client.post("/sync")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["delivered_count"] == 2
    assert body["watermark_after"] == "102"
    assert runtime.target.delivered_positions == [101, 102]


def test_status(client):
    client.post("/sync")
    body = client.get("/status").json()
    assert body["config_id"] == "time-entries"
    assert body["state"] == "idle"
    assert body["watermark"] == "102"
    assert body["last_cycle"]["status"] == "completed"
    assert body["sync_loop_running"] is False


def test_sync_refused_when_halted(client, runtime):
    runtime.watermark.store.fail_writes = True
    assert client.post("/sync").status_code == 503
    assert runtime.coordinator.halted
    assert client.post("/sync").status_code == 503
    assert client.get("/health").status_code == 503


def test_list_connectors(client):
    assert client.get("/api/v1/connectors").json()["connectors"] == ["sql", "timetracker"]


def test_sync_during_backoff_is_refused(runtime):
    backing_off = SyncRuntime(
        runtime.settings,
        make_config(options={"backoff_base_seconds": 30}),
        source=InMemorySource([entry(101)]),
        target=RecordingTarget({101: DeliveryOutcome.retryable("HTTP 503")}),
        watermark_store=MemoryWatermarkStore(initial=100),
    )
    with TestClient(create_app(runtime_factory=lambda: backing_off, start_loop=True)) as client:
        deadline = time.monotonic() + 5
        while backing_off.coordinator.state != CoordinatorState.BACKOFF and time.monotonic() < deadline:
            time.sleep(0.01)

        response = client.post("/sync")
        assert response.status_code == 409
        assert response.json()["status"] == "backoff"
        assert 15 <= response.json()["retry_after_seconds"] <= 30
        assert len(backing_off.target.attempts) == 1
