"""Tailscale API client for the VPN-based provisioning variant.

Mints single-use auth keys for new machines, waits for a machine to show up
in the tailnet with an address, and removes devices on teardown. Auth is an
OAuth client-credentials token fetched lazily and reused for the life of
the client.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from agenthost.config import MeshConfig
from agenthost.errors.registry import format_message
from agenthost.services.errors import MeshEnrollmentTimeoutError, MeshError
from agenthost.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MeshDevice:
    """A device registered in the tailnet."""

    id: str
    hostname: str
    name: str = ""
    addresses: list[str] = field(default_factory=list)

    @property
    def ipv4(self) -> str | None:
        """First IPv4 address, if the device has one."""
        for address in self.addresses:
            if ":" not in address:
                return address
        return None


@dataclass(frozen=True)
class Enrollment:
    """A verified mesh enrollment."""

    tailscale_ip: str
    device_id: str


class TailscaleClient:
    """Synchronous client for the Tailscale v2 API."""

    def __init__(
        self,
        config: MeshConfig,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._client = http_client or httpx.Client(timeout=30.0)
        self._sleep = sleep
        self._access_token: str | None = None

    def close(self) -> None:
        self._client.close()

    def _url(self, path: str) -> str:
        return f"{self.config.api_base.rstrip('/')}{path}"

    def _get_access_token(self) -> str:
        """Exchange the OAuth client credentials for an API access token."""
        if self._access_token:
            return self._access_token
        if not (self.config.oauth_client_id and self.config.oauth_client_secret):
            raise MeshError(
                code="E-3101",
                message="Mesh OAuth client is not configured",
            )
        try:
            response = self._client.post(
                self._url("/oauth/token"),
                data={
                    "client_id": self.config.oauth_client_id,
                    "client_secret": self.config.oauth_client_secret,
                    "grant_type": "client_credentials",
                },
            )
        except httpx.HTTPError as e:
            raise MeshError(code="E-3101", message=f"Tailscale API unreachable: {e}") from e
        if not response.is_success:
            logger.error(
                "Tailscale token exchange failed: HTTP %d %s",
                response.status_code,
                sanitize_error_message(response.text[:500]),
            )
            raise MeshError(
                code="E-3101",
                message=format_message("E-3101"),
                status_code=response.status_code,
            )
        token = self._body(response, "token exchange").get("access_token")
        if not token:
            logger.error("Tailscale token exchange returned no access token")
            raise MeshError(code="E-3101", message=format_message("E-3101"))
        self._access_token = token
        return self._access_token

    @staticmethod
    def _body(response: httpx.Response, operation: str) -> dict[str, Any]:
        """JSON object body of a successful response, else MeshError."""
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            logger.error("Tailscale %s returned a non-object body", operation)
            raise MeshError(code="E-3101", message=format_message("E-3101"))
        return data

    def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._get_access_token()}"}
        try:
            return self._client.request(method, self._url(path), json=json, headers=headers)
        except httpx.HTTPError as e:
            raise MeshError(code="E-3101", message=f"Tailscale API unreachable: {e}") from e

    def _raise_for_error(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        logger.error(
            "Tailscale %s failed: HTTP %d %s",
            operation,
            response.status_code,
            sanitize_error_message(response.text[:500]),
        )
        raise MeshError(
            code="E-3101",
            message=format_message("E-3101"),
            status_code=response.status_code,
        )

    # =========================================================================
    # Auth keys
    # =========================================================================

    def create_auth_key(self, description: str = "agent-vm") -> str:
        """Create a single-use, ephemeral, preauthorized, tagged auth key.

        Returns:
            The auth key secret.
        """
        payload = {
            "capabilities": {
                "devices": {
                    "create": {
                        "reusable": False,
                        "ephemeral": True,
                        "preauthorized": True,
                        "tags": [self.config.tag],
                    }
                }
            },
            "expirySeconds": self.config.auth_key_expiry_seconds,
            "description": description[:50],
        }
        response = self._request("POST", f"/tailnet/{self.config.tailnet}/keys", json=payload)
        self._raise_for_error(response, "create_auth_key")
        key = self._body(response, "create_auth_key").get("key")
        if not key:
            raise MeshError(code="E-3101", message=format_message("E-3101"))
        logger.info("Created mesh auth key (%s)", description)
        return key

    # =========================================================================
    # Devices
    # =========================================================================

    def list_devices(self) -> list[MeshDevice]:
        """List all devices in the tailnet."""
        response = self._request("GET", f"/tailnet/{self.config.tailnet}/devices")
        self._raise_for_error(response, "list_devices")
        devices = []
        for raw in self._body(response, "list_devices").get("devices") or []:
            devices.append(
                MeshDevice(
                    id=str(raw.get("id") or raw.get("nodeId") or ""),
                    hostname=raw.get("hostname", ""),
                    name=raw.get("name", ""),
                    addresses=list(raw.get("addresses") or []),
                )
            )
        return devices

    def verify_enrollment(
        self,
        hostname: str,
        max_retries: int = 60,
        interval: float = 2.0,
    ) -> Enrollment:
        """Wait for hostname to join the tailnet with an address.

        Args:
            hostname: Hostname passed to ``tailscale up``.
            max_retries: Number of device-list polls.
            interval: Seconds between polls.

        Returns:
            Enrollment with the device's private IPv4 address.

        Raises:
            MeshEnrollmentTimeoutError: If the device never shows up.
        """
        for attempt in range(max_retries):
            try:
                devices = self.list_devices()
            except MeshError as e:
                logger.warning("Device list failed while waiting for %s: %s", hostname, e)
                devices = []

            for device in devices:
                matches = device.hostname == hostname or device.name.split(".")[0] == hostname
                if matches and device.ipv4:
                    logger.info("Device %s enrolled at %s", hostname, device.ipv4)
                    return Enrollment(tailscale_ip=device.ipv4, device_id=device.id)

            if attempt < max_retries - 1:
                self._sleep(interval)

        raise MeshEnrollmentTimeoutError(
            code="E-3102",
            message=format_message("E-3102", hostname=hostname),
        )

    def find_device_by_ip(self, ip: str) -> MeshDevice | None:
        """Find the device holding the given private address."""
        for device in self.list_devices():
            if ip in device.addresses:
                return device
        return None

    def delete_device(self, device_id: str) -> None:
        """Remove a device. A 404 counts as success (already gone)."""
        response = self._request("DELETE", f"/device/{device_id}")
        if response.status_code == 404:
            logger.info("Mesh device %s already removed", device_id)
            return
        self._raise_for_error(response, "delete_device")
        logger.info("Removed mesh device %s", device_id)
