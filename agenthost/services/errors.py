"""Shared service-layer error types.

Error dataclasses raised by the outbound clients (hosting provider, mesh
network). Centralised here to avoid circular imports between service
modules.
"""

from dataclasses import dataclass


@dataclass
class ProviderError(Exception):
    """Error from the hosting provider client.

    Attributes:
        code: agenthost error code (E-XXXX format)
        message: User-safe message (already translated)
        status_code: HTTP status of the failing response, if any
        provider_code: Raw provider error code, if any
        details: Raw error details for logging only
    """

    code: str
    message: str
    status_code: int | None = None
    provider_code: str | None = None
    details: dict | None = None

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ProviderAPIError(ProviderError):
    """Non-2xx response other than rate limiting or a missing server."""


class ProviderRateLimitError(ProviderError):
    """Still rate limited after the bounded number of retries."""


class ServerNotFoundError(ProviderError):
    """The server does not exist (HTTP 404 on a server resource)."""


class ActionFailedError(ProviderError):
    """The provider reported a terminal error status for an async action."""


class ActionTimeoutError(ProviderError):
    """An async action did not reach a terminal status in time."""


@dataclass
class MeshError(Exception):
    """Error from the mesh enrollment client.

    Attributes:
        code: agenthost error code (E-XXXX format)
        message: Human-readable error message
        status_code: HTTP status of the failing response, if any
    """

    code: str
    message: str
    status_code: int | None = None

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class MeshEnrollmentTimeoutError(MeshError):
    """The machine never appeared in the device list with an address."""
