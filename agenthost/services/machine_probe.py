"""HTTP liveness probes against a provisioned machine.

Two probes, both answering "what status code did the machine return, or
was it unreachable":

- ``probe_gateway``: ``GET /`` on the public port. The reverse proxy answers
  502 while the worker behind it is not listening yet.
- ``probe_chat``: a minimal authenticated completion request. Any non-502
  status means the worker process is up.
"""

import logging

import httpx

from agenthost.config import ProvisioningConfig, WorkerConfig

logger = logging.getLogger(__name__)

_CHAT_PROBE_BODY = {
    "model": "default",
    "messages": [{"role": "user", "content": "ping"}],
    "max_tokens": 1,
}


class MachineProbe:
    """Short-timeout probes used by the provisioning stepper."""

    def __init__(
        self,
        provisioning: ProvisioningConfig,
        worker: WorkerConfig,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._provisioning = provisioning
        self._worker = worker
        self._client = http_client or httpx.Client()

    def close(self) -> None:
        self._client.close()

    def probe_gateway(self, ip: str) -> int | None:
        """GET / on the machine.

        Returns:
            HTTP status code, or None if the machine was unreachable.
        """
        try:
            response = self._client.get(
                f"http://{ip}/",
                timeout=self._provisioning.probe_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.debug("Gateway probe to %s failed: %s", ip, e)
            return None
        return response.status_code

    def probe_chat(self, ip: str, gateway_token: str) -> int | None:
        """POST a one-token completion authenticated with the gateway token.

        Returns:
            HTTP status code, or None if the machine was unreachable.
        """
        try:
            response = self._client.post(
                f"http://{ip}{self._worker.completion_path}",
                json=_CHAT_PROBE_BODY,
                headers={"Authorization": f"Bearer {gateway_token}"},
                timeout=self._provisioning.chat_probe_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.debug("Chat probe to %s failed: %s", ip, e)
            return None
        return response.status_code
