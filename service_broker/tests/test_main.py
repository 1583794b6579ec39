"""
Unit tests for the Broker Service HTTP API.
"""

import pytest
from fastapi.testclient import TestClient

from shared.config import get_broker_config
from shared.errors import UpstreamAuthRejected, UpstreamRejected
from service_broker.app.main import BrokerService
from service_broker.app.persistence.store import MemoryStore
from service_broker.tests.helpers import (
    FREE_QUOTA,
    PREMIUM_QUOTA,
    FakeClock,
    StubCredentialService,
    StubGenerationClient,
)


class TestBrokerService:
    """Test cases for BrokerService."""

    @pytest.fixture
    def credential_service(self):
        return StubCredentialService()

    @pytest.fixture
    def upstream(self):
        return StubGenerationClient()

    @pytest.fixture
    def service(self, credential_service, upstream):
        return BrokerService(
            config=get_broker_config(env="local"),
            store=MemoryStore(),
            credential_service=credential_service,
            generation_client=upstream,
            clock=FakeClock(),
        )

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as test_client:
            yield test_client

    @pytest.fixture
    def client_id(self, client):
        response = client.post("/clients/resolve", json={"context": "device-abc"})
        assert response.status_code == 200
        return response.json()["client_id"]

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "broker"

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"storage": "ok"}

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_resolve_is_stable(self, client, client_id):
        again = client.post("/clients/resolve", json={"context": "device-abc"})

        assert again.json()["client_id"] == client_id

    def test_resolve_requires_context(self, client):
        response = client.post("/clients/resolve", json={"context": ""})

        assert response.status_code == 422

    def test_forget_context(self, client, client_id):
        response = client.delete("/clients/resolve/device-abc")

        assert response.json() == {"forgotten": True}
        fresh = client.post("/clients/resolve", json={"context": "device-abc"}).json()["client_id"]
        assert fresh != client_id

    def test_new_client_is_free(self, client, client_id):
        response = client.get(f"/clients/{client_id}/tier")

        assert response.status_code == 200
        assert response.json()["tier"] == "free"
        assert response.json()["hourly_quota"] == FREE_QUOTA

    def test_unknown_client(self, client):
        response = client.get("/clients/not-a-client/tier")

        assert response.status_code == 404
        assert response.json()["code"] == "UNKNOWN_CLIENT"

    def test_upgrade(self, client, client_id):
        response = client.post(f"/clients/{client_id}/upgrade", json={"email": "owner@example.com"})

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "premium"
        assert data["hourly_quota"] == PREMIUM_QUOTA
        assert data["owner_email"] == "owner@example.com"

    def test_upgrade_rejects_bad_email(self, client, client_id):
        response = client.post(f"/clients/{client_id}/upgrade", json={"email": "not-an-email"})

        assert response.status_code == 422
        assert client.get(f"/clients/{client_id}/tier").json()["tier"] == "free"

    def test_generate(self, client, client_id, upstream):
        response = client.post("/generate", json={"prompt": "rain"}, headers={"X-Client-ID": client_id})

        assert response.status_code == 200
        assert response.json() == {"success": True, "data": {"echo": {"prompt": "rain"}}}
        assert response.headers["X-Quota-Limit"] == str(FREE_QUOTA)
        assert response.headers["X-Quota-Remaining"] == str(FREE_QUOTA - 1)
        assert "X-Request-ID" in response.headers
        assert upstream.calls[0]["client_id"] == client_id

    def test_generate_requires_known_client(self, client, upstream):
        response = client.post("/generate", json={"prompt": "rain"}, headers={"X-Client-ID": "stranger"})

        assert response.status_code == 404
        assert upstream.calls == []

    def test_generate_quota_exceeded(self, client, client_id):
        headers = {"X-Client-ID": client_id}
        for _ in range(FREE_QUOTA):
            assert client.post("/generate", json={"prompt": "rain"}, headers=headers).status_code == 200

        response = client.post("/generate", json={"prompt": "rain"}, headers=headers)

        assert response.status_code == 429
        data = response.json()
        assert data["code"] == "QUOTA_EXCEEDED"
        assert data["details"]["remaining"] == 0
        assert data["request_id"] == response.headers["X-Request-ID"]

    def test_generate_upstream_rejection(self, client, client_id, upstream):
        upstream.script.append(UpstreamRejected("prompt refused"))

        response = client.post("/generate", json={"prompt": "rain"}, headers={"X-Client-ID": client_id})

        assert response.status_code == 422
        assert response.json()["code"] == "UPSTREAM_REJECTED"

    def test_generate_recovers_from_revoked_credential(self, client, client_id, upstream, credential_service):
        upstream.script.extend([UpstreamAuthRejected(), {"success": True, "data": {"taskId": "t-1"}}])

        response = client.post("/generate", json={"prompt": "rain"}, headers={"X-Client-ID": client_id})

        assert response.status_code == 200
        assert response.json()["data"]["taskId"] == "t-1"
        assert credential_service.call_count == 2

    def test_generate_credential_unavailable(self, client, client_id, credential_service):
        credential_service.failures = 1

        response = client.post("/generate", json={"prompt": "rain"}, headers={"X-Client-ID": client_id})

        assert response.status_code == 503
        assert response.json()["code"] == "CREDENTIAL_UNAVAILABLE"
        assert response.json()["retryable"] is False

    def test_status(self, client, client_id):
        client.post("/generate", json={"prompt": "rain"}, headers={"X-Client-ID": client_id})

        response = client.get(f"/clients/{client_id}/status")

        assert response.status_code == 200
        data = response.json()
        assert data["tier"] == "free"
        assert data["hourly_usage"] == 1
        assert data["remaining"] == FREE_QUOTA - 1
        assert data["can_generate"] is True
        assert data["has_credential"] is True
        assert data["credential_expired"] is False
        assert data["credential_expires_in"] == 3600

    def test_status_reserves_nothing(self, client, client_id):
        for _ in range(3):
            client.get(f"/clients/{client_id}/status")

        assert client.get(f"/clients/{client_id}/status").json()["hourly_usage"] == 0

    def test_stop_closes_clients(self, service, credential_service, upstream):
        with TestClient(service.app):
            pass

        assert credential_service.closed is True
        assert upstream.closed is True
