"""
Tests for the broker status API.
"""

import pytest
from fastapi.testclient import TestClient

from broker_app.status_api import create_app
from quota_broker import MemoryStateStore, QuotaBroker


def seeded_state():
    return {
        "credentials": [
            {"id": "cred-1", "provider": "GOOGLE", "secret": "AIzaSy-status-000001", "name": "Main"},
            {"id": "cred-2", "provider": "GROQ", "secret": "gsk_status-000002", "tenantId": "acme"},
        ],
        "bindings": [
            {"id": 1, "credentialId": "cred-1", "modelName": "gemini-2.5-flash"},
            {"id": 2, "credentialId": "cred-1", "modelName": "gemini-2.5-pro"},
            {"id": 3, "credentialId": "cred-2", "modelName": "llama-3.3-70b-versatile"},
        ],
        "exclusions": {
            "2": {
                "reason": "quota_exhausted",
                "excludedAt": "2025-01-01T00:00:00Z",
                "retryAt": "2999-01-01T00:00:00Z",
                "retryCount": 3,
            }
        },
    }


@pytest.fixture
def client():
    broker = QuotaBroker(store=MemoryStateStore(initial=seeded_state()))
    app = create_app(broker, run_sweep_in_background=False)
    with TestClient(app) as test_client:
        yield test_client


class TestStatusEndpoints:

    def test_status(self, client):
        response = client.get("/api/broker/status")

        assert response.status_code == 200
        data = response.json()
        assert data["summary"]["healthy"] == 2
        assert data["summary"]["excluded"] == 1
        main = data["credentials"][0]
        assert main["key"] == "...000001"
        assert "AIzaSy-status-000001" not in response.text
        assert [b["state"] for b in main["bindings"]] == ["healthy", "excluded"]
        assert main["bindings"][1]["exclusion"]["retryCount"] == 3

    def test_quota_summary(self, client):
        response = client.get("/api/broker/quota/gemini-2.5-flash")

        assert response.status_code == 200
        data = response.json()
        assert data["model"] == "gemini-2.5-flash"
        assert data["windows"]["rpm"]["limit"] == 10
        assert data["available_bindings"][0]["binding_id"] == 1

    def test_quota_summary_respects_tenant(self, client):
        assert client.get("/api/broker/quota/llama-3.3-70b-versatile").status_code == 404
        response = client.get(
            "/api/broker/quota/llama-3.3-70b-versatile", params={"tenant_id": "acme"}
        )
        assert response.status_code == 200
        assert response.json()["total_bindings"] == 1

    def test_unknown_model_is_404(self, client):
        assert client.get("/api/broker/quota/no-such-model").status_code == 404

    def test_exclusions(self, client):
        response = client.get("/api/broker/exclusions")

        assert response.status_code == 200
        items = response.json()
        assert len(items) == 1
        assert items[0]["binding_id"] == 2
        assert items[0]["model"] == "gemini-2.5-pro"
        assert items[0]["reason"] == "quota_exhausted"

    def test_sweep_and_metrics(self, client):
        response = client.post("/api/broker/sweep")

        assert response.status_code == 200
        report = response.json()
        assert report["expired_exclusions"] == 0
        assert report["health"]["excluded"] == 1

        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert "quota_broker_bindings" in metrics.text
