"""Hosting provider error translation to short user-facing messages.

Hetzner Cloud reports failures as ``{"error": {"code": ..., "message": ...}}``.
Resource errors (quota, naming) are not retried; they are mapped here to a
registry code whose message is safe to show on the dashboard.
"""

from agenthost.errors.registry import format_message, get_error

# Provider error codes to agenthost error codes
PROVIDER_ERROR_MAP: dict[str, str] = {
    "resource_limit_exceeded": "E-3003",
    "uniqueness_error": "E-3004",
    "rate_limit_exceeded": "E-3002",
    "not_found": "E-3007",
    "service_error": "E-3001",
    "unavailable": "E-3001",
    "timeout": "E-3001",
    "maintenance": "E-3001",
    "conflict": "E-3001",
}

# Substrings in provider messages that identify the same conditions
PROVIDER_MESSAGE_PATTERNS: dict[str, str] = {
    "server limit reached": "E-3003",
    "limit exceeded": "E-3003",
    "already exists": "E-3004",
    "rate limit": "E-3002",
    "too many requests": "E-3002",
}

_FALLBACK_CODE = "E-3008"

RESOURCE_ERROR_CODES = frozenset({"E-3003", "E-3004"})


def translate_provider_error(
    provider_code: str | None,
    provider_message: str | None,
    context: dict | None = None,
) -> tuple[str, str, str]:
    """Translate a provider error to an agenthost error.

    Args:
        provider_code: Provider error code (e.g. "resource_limit_exceeded").
        provider_message: Provider error message text.
        context: Values for message template placeholders.

    Returns:
        Tuple of (error_code, user_message, remediation).
    """
    context = context or {}

    code = None
    if provider_code and provider_code in PROVIDER_ERROR_MAP:
        code = PROVIDER_ERROR_MAP[provider_code]
    elif provider_message:
        message_lower = provider_message.lower()
        for pattern, mapped in PROVIDER_MESSAGE_PATTERNS.items():
            if pattern in message_lower:
                code = mapped
                break

    error = get_error(code or _FALLBACK_CODE)
    if error is None:
        return (
            _FALLBACK_CODE,
            "The hosting provider rejected the request. Please try again.",
            "Contact support.",
        )
    return (error.code, format_message(error.code, **context), error.remediation)


def extract_provider_error(body: object) -> tuple[str | None, str | None]:
    """Extract (code, message) from a provider error response body.

    Args:
        body: Decoded JSON response body (any shape).

    Returns:
        Tuple of (error_code, error_message), either may be None.
    """
    if not isinstance(body, dict):
        return (None, None)
    err = body.get("error")
    if isinstance(err, dict):
        return (err.get("code"), err.get("message"))
    return (None, None)


def is_resource_error(code: str) -> bool:
    """Whether an agenthost error code is a non-retryable resource error."""
    return code in RESOURCE_ERROR_CODES
