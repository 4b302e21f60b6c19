"""Tests for credential push and token refresh routes."""

import json

import httpx
import pytest

from agenthost.api.dependencies import get_delivery_service
from agenthost.api.main import app
from agenthost.db.models import InstanceStatus
from agenthost.services.credential_delivery import CredentialDeliveryService
from agenthost.services.token_refresh import TokenRefreshService
from tests.helpers.http import RecordingHandler


def _connect(test_db, app_config, cipher, user_id="user-1"):
    return TokenRefreshService(test_db, app_config.google, cipher).save_tokens(
        user_id, "google", "ya29.a", refresh_token="1//r", email="o@example.com"
    )


@pytest.fixture
def machines(client, test_db, app_config, cipher):
    """Route credential pushes to a recording handler instead of the network."""
    handler = RecordingHandler(httpx.Response(200, json={"status": "ok"}))
    tokens = TokenRefreshService(test_db, app_config.google, cipher)
    app.dependency_overrides[get_delivery_service] = lambda: CredentialDeliveryService(
        test_db, app_config, tokens, http_client=handler.client()
    )
    return handler


class TestPush:
    def test_push_reports_per_machine(
        self, client, machines, test_db, app_config, cipher, make_agent, make_instance
    ):
        _connect(test_db, app_config, cipher)
        agent = make_agent(gateway_token="t" * 64)
        instance = make_instance(
            agent, status=InstanceStatus.running, server_id="1", server_ip="203.0.113.1"
        )

        response = client.post(
            "/api/v1/credentials/push", json={"user_id": "user-1", "provider": "google"}
        )

        assert response.status_code == 200
        assert response.json() == {
            "provider": "google",
            "attempted": 1,
            "delivered": [instance.id],
            "failed": [],
            "skipped_reason": None,
        }
        request = machines.requests[0]
        assert str(request.url) == "http://203.0.113.1/internal/google-credentials"
        assert json.loads(request.content)["accessToken"] == "ya29.a"

    def test_push_without_credentials(self, client, machines):
        response = client.post("/api/v1/credentials/push", json={"user_id": "nobody"})
        assert response.status_code == 200
        assert response.json()["skipped_reason"]
        assert machines.requests == []

    def test_unknown_provider(self, client):
        response = client.post(
            "/api/v1/credentials/push", json={"user_id": "user-1", "provider": "slack"}
        )
        assert response.status_code == 400

    def test_user_id_required(self, client):
        assert client.post("/api/v1/credentials/push", json={}).status_code == 422


class TestRefresh:
    def test_valid_token_not_refreshed(self, client, test_db, app_config, cipher):
        integration = _connect(test_db, app_config, cipher)
        response = client.post(f"/api/v1/integrations/{integration.id}/refresh")
        assert response.json() == {"refreshed": False}

    def test_missing_integration(self, client):
        assert client.post("/api/v1/integrations/missing/refresh").status_code == 404
