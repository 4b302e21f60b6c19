"""Tests for the Tailscale mesh enrollment client."""

import json

import httpx
import pytest

from agenthost.config import MeshConfig
from agenthost.services.errors import MeshEnrollmentTimeoutError, MeshError
from agenthost.services.mesh_client import MeshDevice, TailscaleClient
from tests.helpers.http import Router, mock_client

TOKEN_PATH = "/api/v2/oauth/token"
DEVICES_PATH = "/api/v2/tailnet/-/devices"


@pytest.fixture
def mesh_config() -> MeshConfig:
    return MeshConfig(
        api_base="https://tailscale.test/api/v2",
        oauth_client_id="ts-client",
        oauth_client_secret="ts-secret",
    )


def _token_route() -> httpx.Response:
    return httpx.Response(200, json={"access_token": "ts-access", "token_type": "Bearer"})


def _devices(*devices: dict) -> httpx.Response:
    return httpx.Response(200, json={"devices": list(devices)})


def _client(config: MeshConfig, router: Router, sleeps: list[float] | None = None):
    return TailscaleClient(
        config,
        http_client=router.client(),
        sleep=(sleeps if sleeps is not None else []).append,
    )


class TestAuth:
    def test_token_fetched_once(self, mesh_config):
        router = Router({
            ("POST", TOKEN_PATH): _token_route(),
            ("GET", DEVICES_PATH): _devices(),
        })
        client = _client(mesh_config, router)

        client.list_devices()
        client.list_devices()

        assert len(router.calls("POST", TOKEN_PATH)) == 1
        assert router.calls("GET", DEVICES_PATH)[0].headers["Authorization"] == "Bearer ts-access"

    def test_unconfigured_client_raises(self):
        client = _client(MeshConfig(), Router())
        with pytest.raises(MeshError):
            client.list_devices()

    def test_unreachable_token_endpoint_raises_mesh_error(self, mesh_config):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = TailscaleClient(mesh_config, http_client=mock_client(refuse))

        with pytest.raises(MeshError) as exc_info:
            client.find_device_by_ip("100.64.0.7")
        assert exc_info.value.code == "E-3101"

    @pytest.mark.parametrize(
        "token_response",
        [
            httpx.Response(200, text="<html>maintenance</html>"),
            httpx.Response(200, json={"token_type": "Bearer"}),
            httpx.Response(200, json=["ts-access"]),
        ],
        ids=["not-json", "missing-token", "not-an-object"],
    )
    def test_malformed_token_body_raises_mesh_error(self, mesh_config, token_response):
        router = Router({("POST", TOKEN_PATH): token_response})

        with pytest.raises(MeshError):
            _client(mesh_config, router).list_devices()

        assert router.calls("GET", DEVICES_PATH) == []

    def test_non_json_device_list_raises_mesh_error(self, mesh_config):
        router = Router({
            ("POST", TOKEN_PATH): _token_route(),
            ("GET", DEVICES_PATH): httpx.Response(200, text="oops"),
        })
        with pytest.raises(MeshError):
            _client(mesh_config, router).list_devices()

    def test_rejected_token_exchange(self, mesh_config):
        router = Router({("POST", TOKEN_PATH): httpx.Response(401, text="bad client")})
        with pytest.raises(MeshError) as exc_info:
            _client(mesh_config, router).list_devices()
        assert exc_info.value.status_code == 401


class TestAuthKeys:
    def test_create_auth_key_capabilities(self, mesh_config):
        router = Router({
            ("POST", TOKEN_PATH): _token_route(),
            ("POST", "/api/v2/tailnet/-/keys"): httpx.Response(200, json={"key": "tskey-auth-1"}),
        })

        key = _client(mesh_config, router).create_auth_key("agent-1234abcd-1")

        assert key == "tskey-auth-1"
        body = json.loads(router.calls("POST", "/api/v2/tailnet/-/keys")[0].content)
        create = body["capabilities"]["devices"]["create"]
        assert create == {
            "reusable": False,
            "ephemeral": True,
            "preauthorized": True,
            "tags": ["tag:agent"],
        }
        assert body["expirySeconds"] == 3600


class TestEnrollment:
    def test_verify_enrollment_waits_for_address(self, mesh_config):
        responses = [
            _devices(),
            _devices({"id": "d1", "hostname": "agent-1", "addresses": []}),
            _devices({"id": "d1", "hostname": "agent-1", "addresses": ["fd7a::1", "100.64.0.5"]}),
        ]
        router = Router({
            ("POST", TOKEN_PATH): _token_route(),
            ("GET", DEVICES_PATH): lambda request: responses.pop(0),
        })
        sleeps: list[float] = []

        enrollment = _client(mesh_config, router, sleeps).verify_enrollment(
            "agent-1", max_retries=5, interval=2.0
        )

        assert enrollment.tailscale_ip == "100.64.0.5"
        assert enrollment.device_id == "d1"
        assert sleeps == [2.0, 2.0]

    def test_matches_on_magic_dns_name(self, mesh_config):
        router = Router({
            ("POST", TOKEN_PATH): _token_route(),
            ("GET", DEVICES_PATH): _devices(
                {"id": "d2", "name": "agent-2.tail1234.ts.net", "addresses": ["100.64.0.9"]}
            ),
        })
        enrollment = _client(mesh_config, router).verify_enrollment("agent-2", max_retries=1)
        assert enrollment.tailscale_ip == "100.64.0.9"

    def test_timeout(self, mesh_config):
        router = Router({
            ("POST", TOKEN_PATH): _token_route(),
            ("GET", DEVICES_PATH): _devices(),
        })
        sleeps: list[float] = []
        with pytest.raises(MeshEnrollmentTimeoutError) as exc_info:
            _client(mesh_config, router, sleeps).verify_enrollment(
                "agent-3", max_retries=3, interval=1.0
            )
        assert exc_info.value.code == "E-3102"
        assert sleeps == [1.0, 1.0]

    def test_device_list_errors_are_retried(self, mesh_config):
        responses = [
            httpx.Response(500, text="oops"),
            _devices({"id": "d4", "hostname": "agent-4", "addresses": ["100.64.0.4"]}),
        ]
        router = Router({
            ("POST", TOKEN_PATH): _token_route(),
            ("GET", DEVICES_PATH): lambda request: responses.pop(0),
        })
        enrollment = _client(mesh_config, router).verify_enrollment("agent-4", max_retries=3)
        assert enrollment.device_id == "d4"


class TestDevices:
    def test_find_and_delete_device(self, mesh_config):
        router = Router({
            ("POST", TOKEN_PATH): _token_route(),
            ("GET", DEVICES_PATH): _devices(
                {"id": "d5", "hostname": "agent-5", "addresses": ["100.64.0.5"]}
            ),
            ("DELETE", "/api/v2/device/d5"): httpx.Response(200),
        })
        client = _client(mesh_config, router)

        device = client.find_device_by_ip("100.64.0.5")
        client.delete_device(device.id)

        assert device.hostname == "agent-5"
        assert len(router.calls("DELETE", "/api/v2/device/d5")) == 1
        assert client.find_device_by_ip("100.64.9.9") is None

    def test_delete_missing_device_is_success(self, mesh_config):
        router = Router({("POST", TOKEN_PATH): _token_route()})
        _client(mesh_config, router).delete_device("gone")

    def test_ipv4_skips_ipv6(self):
        device = MeshDevice(id="d", hostname="h", addresses=["fd7a:115c::1"])
        assert device.ipv4 is None
