"""Secret redaction for logs and persisted error messages.

Gateway tokens, provider API tokens, mesh auth keys and OAuth tokens all pass
through this process; nothing that reaches a log line or an instance's error
column should carry them.
"""

import re
from collections.abc import Mapping

REDACTED = "***REDACTED***"

# Matched case-insensitively as substrings of dict keys
_DEFAULT_SENSITIVE_PATTERNS = frozenset({
    "secret", "token", "authorization", "api_key", "apikey", "password",
    "credential", "auth_key", "authkey", "client_id", "clientid",
    "user_data",
})

# Redacted wholesale, whatever the value type
_CONTAINER_KEYS = frozenset({"credentials", "headers"})


def _redact_value(value, patterns: frozenset[str]):
    if isinstance(value, Mapping):
        return redact_for_logging(value, patterns)
    if isinstance(value, list):
        return [
            redact_for_logging(item, patterns) if isinstance(item, Mapping) else item
            for item in value
        ]
    return value


def redact_for_logging(
    obj: Mapping,
    sensitive_patterns: frozenset[str] = _DEFAULT_SENSITIVE_PATTERNS,
) -> dict:
    """Return a copy of obj with sensitive values replaced.

    Args:
        obj: Mapping to redact (not mutated).
        sensitive_patterns: Substrings whose matching keys are redacted.

    Returns:
        New dict; nested mappings and lists of mappings are handled
        recursively.
    """
    redacted = {}
    for key, value in obj.items():
        lowered = str(key).lower()
        if lowered in _CONTAINER_KEYS or any(p in lowered for p in sensitive_patterns):
            redacted[key] = REDACTED
        else:
            redacted[key] = _redact_value(value, sensitive_patterns)
    return redacted


_KEYWORDS = "|".join((
    "secret", "token", "password", "api_key", "apikey", "auth_key", "auth-key",
    "client_id", "client_secret", "access_token", "refresh_token",
    "authorization", "credential",
    "accessToken", "refreshToken", "clientSecret", "gatewayToken",
))

# Order matters: header and bearer forms first, then key/value shapes.
_VALUE_PATTERNS = re.compile(
    "(?i)" + "|".join((
        r"Authorization\s*:\s*Bearer\s+\S+",
        r"Bearer\s+[A-Za-z0-9._~+/=-]+",
        r"tskey-[A-Za-z0-9-]+",
        r'"(?:' + _KEYWORDS + r')"\s*:\s*"[^"]*"',
        r"(?:" + _KEYWORDS + r")\s*[=:]\s*\"[^\"]*\"",
        r"(?:" + _KEYWORDS + r")\s*[=:]\s*\S+",
    ))
)

_URL_PASSWORD = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)(?P<user>[^:/@]+):[^@/]*@", re.I)


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Redact secrets in msg and cap its length for logs or DB persistence."""
    if msg is None:
        return None
    sanitized = _VALUE_PATTERNS.sub(REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized


def redact_url(url: str) -> str:
    """Mask the password of a connection URL, keeping scheme, user and host.

    >>> redact_url("postgresql://app:hunter2@db:5432/agenthost")
    'postgresql://app:***REDACTED***@db:5432/agenthost'
    """
    return _URL_PASSWORD.sub(lambda m: f"{m['scheme']}{m['user']}:{REDACTED}@", url)
