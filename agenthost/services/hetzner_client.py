"""Rate-limited HTTP client for the Hetzner Cloud server API.

Every call goes through ``_request``, which absorbs HTTP 429 responses:
it sleeps until the ``RateLimit-Reset`` wall-clock time when the header is
present, otherwise backs off exponentially with jitter, and gives up after
``ProviderConfig.max_attempts`` requests in total.

Example:
    client = HetznerClient(config.provider)
    created = client.create_server("aura-1a2b3c4d", "ash", user_data, labels={})
    client.wait_for_action(created.action_id)
"""

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from agenthost.config import ProviderConfig
from agenthost.errors.provider_translation import (
    extract_provider_error,
    translate_provider_error,
)
from agenthost.errors.registry import format_message
from agenthost.services.errors import (
    ActionFailedError,
    ActionTimeoutError,
    ProviderAPIError,
    ProviderRateLimitError,
    ServerNotFoundError,
)
from agenthost.utils.redaction import sanitize_error_message

logger = logging.getLogger(__name__)

SHUTDOWN_WAIT_RETRIES = 60
SHUTDOWN_WAIT_INTERVAL = 1.0


@dataclass(frozen=True)
class CreatedServer:
    """Result of a create-server call."""

    id: str
    public_ip: str | None
    action_id: str | None


@dataclass(frozen=True)
class ServerInfo:
    """Snapshot of a server's provider-side state."""

    id: str
    status: str
    public_ip: str | None

    @property
    def is_running(self) -> bool:
        return self.status == "running"


class HetznerClient:
    """Synchronous client for the Hetzner Cloud API.

    Attributes:
        config: Provider section of the application config.
    """

    def __init__(
        self,
        config: ProviderConfig,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the client.

        Args:
            config: Provider configuration (token, base URL, retry policy).
            http_client: Optional pre-built httpx client (tests pass one
                with a MockTransport).
            sleep: Sleep function used between retries and action polls.
            clock: Wall-clock source in unix seconds.
            jitter: Source of the random 0..1s added to backoff delays.
        """
        self.config = config
        self._client = http_client or httpx.Client(
            timeout=config.request_timeout_seconds
        )
        self._sleep = sleep
        self._clock = clock
        self._jitter = jitter

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> "HetznerClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Request plumbing
    # =========================================================================

    def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send a request, retrying on HTTP 429.

        Args:
            method: HTTP method.
            path: Path below the API base URL (leading slash).
            json: Optional JSON body.

        Returns:
            The first non-429 response.

        Raises:
            ProviderRateLimitError: If still rate limited after max_attempts requests.
            ProviderAPIError: If the provider cannot be reached.
        """
        url = f"{self.config.base_url.rstrip('/')}{path}"
        headers = {"Authorization": f"Bearer {self.config.api_token}"}
        attempts = 0
        while True:
            try:
                response = self._client.request(method, url, json=json, headers=headers)
            except httpx.HTTPError as e:
                logger.warning("Hetzner %s %s failed: %s", method, path, e)
                raise ProviderAPIError(
                    code="E-3001",
                    message=format_message("E-3001"),
                    details={"error": str(e)},
                ) from e

            if response.status_code != 429:
                return response

            attempts += 1
            if attempts >= self.config.max_attempts:
                logger.error(
                    "Hetzner %s %s still rate limited after %d attempts",
                    method, path, attempts,
                )
                raise ProviderRateLimitError(
                    code="E-3002",
                    message=(
                        f"Rate limit exceeded after {attempts} attempts. "
                        "Please wait a moment and try again."
                    ),
                    status_code=429,
                    provider_code="rate_limit_exceeded",
                )

            delay = self._rate_limit_delay(response, attempts)
            logger.warning(
                "Hetzner rate limited on %s %s (attempt %d/%d), waiting %.1fs",
                method, path, attempts, self.config.max_attempts, delay,
            )
            self._sleep(delay)

    def _rate_limit_delay(self, response: httpx.Response, attempt: int) -> float:
        """Seconds to wait before retry number attempt (1-based)."""
        reset = response.headers.get("RateLimit-Reset")
        if reset:
            try:
                return max(0.0, float(reset) - self._clock())
            except ValueError:
                logger.debug("Ignoring malformed RateLimit-Reset header %r", reset)
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                logger.debug("Ignoring malformed Retry-After header %r", retry_after)
        backoff = min(
            self.config.backoff_cap_seconds,
            self.config.backoff_base_seconds * 2 ** (attempt - 1),
        )
        return backoff + self._jitter()

    @staticmethod
    def _body(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _raise_for_error(self, response: httpx.Response, operation: str) -> None:
        """Raise a translated ProviderAPIError for any non-2xx response."""
        if response.is_success:
            return
        body = self._body(response)
        provider_code, provider_message = extract_provider_error(body)
        code, message, _remediation = translate_provider_error(provider_code, provider_message)
        logger.error(
            "Hetzner %s failed: HTTP %d %s: %s",
            operation,
            response.status_code,
            provider_code,
            sanitize_error_message(provider_message or response.text[:500]),
        )
        raise ProviderAPIError(
            code=code,
            message=message,
            status_code=response.status_code,
            provider_code=provider_code,
            details={"provider_message": provider_message},
        )

    # =========================================================================
    # Servers
    # =========================================================================

    def create_server(
        self,
        name: str,
        location: str,
        user_data: str,
        labels: dict[str, str] | None = None,
        server_type: str | None = None,
        image: str | None = None,
        ssh_keys: list[str] | None = None,
    ) -> CreatedServer:
        """Create and start a server.

        Args:
            name: Server name (unique per project).
            location: Provider location code (see regions.resolve_location).
            user_data: First-boot cloud-config payload.
            labels: Provider labels for later lookup.
            server_type: Overrides config.server_type.
            image: Overrides config.boot_image.
            ssh_keys: Overrides config.ssh_key_ids.

        Returns:
            CreatedServer with the server id, public IPv4 and creation action id.

        Raises:
            ProviderAPIError: On any provider rejection (already translated).
        """
        payload: dict[str, Any] = {
            "name": name,
            "server_type": server_type or self.config.server_type,
            "image": image or self.config.boot_image,
            "location": location,
            "user_data": user_data,
            "start_after_create": True,
            "labels": labels or {},
        }
        keys = ssh_keys if ssh_keys is not None else self.config.ssh_key_ids
        if keys:
            payload["ssh_keys"] = [int(key) if key.isdigit() else key for key in keys]
        response = self._request("POST", "/servers", json=payload)
        self._raise_for_error(response, "create_server")

        body = self._body(response)
        server = body.get("server") or {}
        action = body.get("action") or {}
        ipv4 = ((server.get("public_net") or {}).get("ipv4") or {}).get("ip")
        created = CreatedServer(
            id=str(server.get("id")),
            public_ip=ipv4,
            action_id=str(action["id"]) if action.get("id") is not None else None,
        )
        logger.info("Created server %s (%s) in %s at %s", created.id, name, location, ipv4)
        return created

    def get_server(self, server_id: str) -> ServerInfo:
        """Fetch a server's status.

        Raises:
            ServerNotFoundError: If the server does not exist.
            ProviderAPIError: On other provider failures.
        """
        response = self._request("GET", f"/servers/{server_id}")
        if response.status_code == 404:
            raise ServerNotFoundError(
                code="E-3007",
                message=format_message("E-3007", server_id=server_id),
                status_code=404,
                provider_code="not_found",
            )
        self._raise_for_error(response, "get_server")
        server = self._body(response).get("server") or {}
        ipv4 = ((server.get("public_net") or {}).get("ipv4") or {}).get("ip")
        return ServerInfo(
            id=str(server.get("id", server_id)),
            status=str(server.get("status", "unknown")),
            public_ip=ipv4,
        )

    def delete_server(self, server_id: str) -> None:
        """Delete a server. A 404 counts as success (already gone)."""
        response = self._request("DELETE", f"/servers/{server_id}")
        if response.status_code == 404:
            logger.info("Server %s already deleted", server_id)
            return
        self._raise_for_error(response, "delete_server")
        logger.info("Deleted server %s", server_id)

    def _server_action(self, server_id: str, action: str) -> str | None:
        response = self._request("POST", f"/servers/{server_id}/actions/{action}")
        if response.status_code == 404:
            raise ServerNotFoundError(
                code="E-3007",
                message=format_message("E-3007", server_id=server_id),
                status_code=404,
                provider_code="not_found",
            )
        self._raise_for_error(response, action)
        action_data = self._body(response).get("action") or {}
        action_id = action_data.get("id")
        return str(action_id) if action_id is not None else None

    def shutdown_server(self, server_id: str) -> None:
        """Gracefully shut a server down, forcing power-off if that fails.

        Waits up to 60s for the graceful shutdown action.
        """
        try:
            action_id = self._server_action(server_id, "shutdown")
            if action_id is not None:
                self.wait_for_action(
                    action_id,
                    max_retries=SHUTDOWN_WAIT_RETRIES,
                    interval=SHUTDOWN_WAIT_INTERVAL,
                )
        except (ActionTimeoutError, ActionFailedError, ProviderAPIError) as e:
            logger.warning(
                "Graceful shutdown of server %s failed (%s), forcing power off",
                server_id, e,
            )
            self.power_off_server(server_id)

    def power_on_server(self, server_id: str) -> None:
        """Power a stopped server on and wait for the action."""
        action_id = self._server_action(server_id, "poweron")
        if action_id is not None:
            self.wait_for_action(action_id)

    def power_off_server(self, server_id: str) -> None:
        """Hard power-off and wait for the action."""
        action_id = self._server_action(server_id, "poweroff")
        if action_id is not None:
            self.wait_for_action(action_id)

    # =========================================================================
    # Actions
    # =========================================================================

    def wait_for_action(
        self,
        action_id: str,
        max_retries: int = 120,
        interval: float = 1.0,
    ) -> None:
        """Poll an async action until it succeeds.

        Args:
            action_id: Provider action id.
            max_retries: Number of polls before giving up.
            interval: Seconds between polls.

        Raises:
            ActionFailedError: Immediately when the action reports "error".
            ActionTimeoutError: After max_retries polls without a terminal status.
        """
        for attempt in range(max_retries):
            response = self._request("GET", f"/actions/{action_id}")
            self._raise_for_error(response, "get_action")
            action = self._body(response).get("action") or {}
            status = action.get("status")

            if status == "success":
                return
            if status == "error":
                error = action.get("error") or {}
                logger.error(
                    "Hetzner action %s (%s) failed: %s: %s",
                    action_id,
                    action.get("command"),
                    error.get("code"),
                    sanitize_error_message(error.get("message")),
                )
                raise ActionFailedError(
                    code="E-3005",
                    message=format_message("E-3005", action=action.get("command") or action_id),
                    provider_code=error.get("code"),
                    details={"provider_message": error.get("message")},
                )

            if attempt < max_retries - 1:
                self._sleep(interval)

        raise ActionTimeoutError(
            code="E-3006",
            message=format_message("E-3006", action_id=action_id, seconds=max_retries * interval),
        )
