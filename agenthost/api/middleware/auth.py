"""Optional shared API-key auth for the orchestrator API.

When AGENTHOST_API_KEY (or ``api.api_key`` in the config file) is set,
every request outside the public paths must carry it in ``X-API-Key``.
The key is a single shared secret for the dashboard backend and the poll
scheduler; there is no per-user authorization here.
"""

import hmac
import logging
import os
import threading
import time
from collections import defaultdict, deque

from fastapi import Request
from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

_PUBLIC_PATH_PREFIXES = (
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
)

_MIN_API_KEY_LENGTH = 32


class FailureWindow:
    """Sliding window of auth failures per client address."""

    def __init__(self, limit: int = 10, window_seconds: float = 300.0, clock=time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._failures: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _prune(self, client: str, now: float) -> deque[float]:
        failures = self._failures[client]
        while failures and now - failures[0] >= self.window_seconds:
            failures.popleft()
        return failures

    def blocked(self, client: str) -> bool:
        with self._lock:
            return len(self._prune(client, self._clock())) >= self.limit

    def record(self, client: str) -> None:
        with self._lock:
            now = self._clock()
            self._prune(client, now).append(now)

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()


_failures = FailureWindow()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def reset_rate_limiter() -> None:
    """Reset the rate limiter state. Used by tests."""
    _failures.clear()


def get_expected_api_key() -> str:
    """Configured API key; empty string means auth is disabled."""
    key = os.environ.get("AGENTHOST_API_KEY", "").strip()
    if key:
        return key
    from agenthost.api.dependencies import get_config

    return (get_config().api.api_key or "").strip()


def validate_api_key_strength() -> None:
    """Refuse to start with a configured but short key.

    Raises:
        ValueError: If the key is set but shorter than 32 characters.
    """
    key = get_expected_api_key()
    if key and len(key) < _MIN_API_KEY_LENGTH:
        raise ValueError(
            f"API key is too short ({len(key)} chars). "
            f"Minimum length is {_MIN_API_KEY_LENGTH} characters."
        )


def should_authenticate(path: str) -> bool:
    return not path.startswith(_PUBLIC_PATH_PREFIXES)


async def maybe_require_api_key(request: Request, call_next) -> Response:
    """FastAPI middleware entrypoint for optional API-key auth."""
    if request.method.upper() == "OPTIONS":
        return await call_next(request)

    expected_key = get_expected_api_key()
    if not expected_key or not should_authenticate(request.url.path):
        return await call_next(request)

    client_ip = _client_ip(request)
    if _failures.blocked(client_ip):
        logger.warning("Auth rate limit exceeded for IP %s", client_ip)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many authentication failures. Try again later."},
        )

    provided_key = request.headers.get("X-API-Key", "")
    if not provided_key or not hmac.compare_digest(provided_key, expected_key):
        _failures.record(client_ip)
        return JSONResponse(
            status_code=401,
            content={"detail": "Invalid or missing API key"},
        )
    return await call_next(request)
