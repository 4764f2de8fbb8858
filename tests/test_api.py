from __future__ import annotations

from fastapi.testclient import TestClient

from trap_pipeline import main as main_module
from trap_pipeline.core.config import AppSettings


class StubSupervisor:
    def __init__(self, settings: AppSettings) -> None:
        self.settings = settings
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    def status(self) -> dict:
        return {
            "running": self.started and not self.stopped,
            "consumer": {"queue_url": "q", "received": 3, "acknowledged": 2},
            "aggregation": {"cycles": 1, "last_results": {}},
        }


def test_health_check(client: TestClient) -> None:
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "trap-telemetry-pipeline", "environment": "test"}


def test_status_when_pipeline_disabled(client: TestClient) -> None:
    response = client.get("/api/v1/pipeline/status")

    assert response.status_code == 200
    assert response.json() == {"enabled": False, "running": False, "consumer": None, "aggregation": None}


def test_lifespan_starts_and_stops_supervisor(monkeypatch) -> None:
    created = []

    def factory(settings: AppSettings) -> StubSupervisor:
        supervisor = StubSupervisor(settings)
        created.append(supervisor)
        return supervisor

    monkeypatch.setattr(main_module, "PipelineSupervisor", factory)
    app = main_module.create_app(AppSettings(_env_file=None, pipeline_enabled=True, log_json=False))

    with TestClient(app) as test_client:
        body = test_client.get("/api/v1/pipeline/status").json()
        assert created[0].started
        assert not created[0].stopped

    assert body["enabled"] is True
    assert body["running"] is True
    assert body["consumer"]["acknowledged"] == 2
    assert created[0].stopped
