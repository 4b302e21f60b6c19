"""Error code registry with E-XXXX format codes.

Categories:
- E-2xxx: Validation errors
- E-3xxx: Hosting provider and mesh network errors
- E-4xxx: Lifecycle / orchestration errors
- E-5xxx: Credential errors

Each error includes a code, title, message template, and remediation steps.
Messages are what users see; raw provider detail only goes to the log.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error codes."""

    VALIDATION = "validation"  # E-2xxx
    PROVIDER = "provider"  # E-3xxx
    LIFECYCLE = "lifecycle"  # E-4xxx
    CREDENTIALS = "credentials"  # E-5xxx


@dataclass
class ErrorCode:
    """Definition of an error code with metadata.

    Attributes:
        code: Error code in E-XXXX format.
        category: Error category for grouping.
        title: Short title for display.
        message_template: Message with {placeholders} for context.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
    """

    code: str
    category: ErrorCategory
    title: str
    message_template: str
    remediation: str
    is_retryable: bool = False


ERROR_REGISTRY: dict[str, ErrorCode] = {
    # Validation errors (E-2xxx)
    "E-2001": ErrorCode(
        code="E-2001",
        category=ErrorCategory.VALIDATION,
        title="Invalid Bootstrap Command",
        message_template="Bootstrap command must be a single line: {command}",
        remediation="Deliver file content through the write_files manifest instead of runcmd.",
    ),
    # Provider errors (E-3xxx)
    "E-3001": ErrorCode(
        code="E-3001",
        category=ErrorCategory.PROVIDER,
        title="Hosting Provider Unavailable",
        message_template="The hosting provider could not be reached. Please try again.",
        remediation="Wait a moment and retry. Check the provider status page if it persists.",
        is_retryable=True,
    ),
    "E-3002": ErrorCode(
        code="E-3002",
        category=ErrorCategory.PROVIDER,
        title="Rate Limit Exceeded",
        message_template="Too many requests. Please wait a moment and try again.",
        remediation="Reduce request frequency; the provider limit resets within an hour.",
        is_retryable=True,
    ),
    "E-3003": ErrorCode(
        code="E-3003",
        category=ErrorCategory.PROVIDER,
        title="Server Limit Reached",
        message_template=(
            "Server limit reached on hosting provider. "
            "Please delete unused agents or contact support."
        ),
        remediation="Destroy agents you no longer use, or request a higher server limit.",
    ),
    "E-3004": ErrorCode(
        code="E-3004",
        category=ErrorCategory.PROVIDER,
        title="Server Name Conflict",
        message_template="A server with this name already exists. Please try again.",
        remediation="Retry provisioning; a fresh instance gets a new server name.",
        is_retryable=True,
    ),
    "E-3005": ErrorCode(
        code="E-3005",
        category=ErrorCategory.PROVIDER,
        title="Provider Action Failed",
        message_template="The hosting provider reported a failed operation: {action}.",
        remediation="Retry the operation. Contact support if it keeps failing.",
    ),
    "E-3006": ErrorCode(
        code="E-3006",
        category=ErrorCategory.PROVIDER,
        title="Provider Action Timed Out",
        message_template="Action {action_id} timed out after {seconds:g}s.",
        remediation="Retry the operation; provider actions occasionally stall.",
        is_retryable=True,
    ),
    "E-3007": ErrorCode(
        code="E-3007",
        category=ErrorCategory.PROVIDER,
        title="Server Not Found",
        message_template="Server {server_id} no longer exists at the hosting provider.",
        remediation="Provision the agent again.",
    ),
    "E-3008": ErrorCode(
        code="E-3008",
        category=ErrorCategory.PROVIDER,
        title="Hosting Provider Error",
        message_template="The hosting provider rejected the request. Please try again.",
        remediation="Retry the operation. Contact support with the agent id if it persists.",
    ),
    "E-3101": ErrorCode(
        code="E-3101",
        category=ErrorCategory.PROVIDER,
        title="Mesh Network Error",
        message_template="The private network service rejected the request.",
        remediation="Check the mesh OAuth client configuration.",
    ),
    "E-3102": ErrorCode(
        code="E-3102",
        category=ErrorCategory.PROVIDER,
        title="Mesh Enrollment Timed Out",
        message_template="Machine {hostname} did not join the private network in time.",
        remediation="Retry provisioning. Check that the auth key was valid.",
        is_retryable=True,
    ),
    # Lifecycle errors (E-4xxx)
    "E-4001": ErrorCode(
        code="E-4001",
        category=ErrorCategory.LIFECYCLE,
        title="Provisioning Timed Out",
        message_template=(
            "Provisioning timed out after {minutes} minutes. "
            "Please retry; the next attempt usually succeeds."
        ),
        remediation="Provision the agent again.",
        is_retryable=True,
    ),
    "E-4002": ErrorCode(
        code="E-4002",
        category=ErrorCategory.LIFECYCLE,
        title="No Running Instance",
        message_template="No running instance to stop",
        remediation="Start or provision the agent first.",
    ),
    "E-4003": ErrorCode(
        code="E-4003",
        category=ErrorCategory.LIFECYCLE,
        title="No Stopped Instance",
        message_template="No stopped instance to start",
        remediation="Stop the agent first, or provision a new instance.",
    ),
    "E-4004": ErrorCode(
        code="E-4004",
        category=ErrorCategory.LIFECYCLE,
        title="Instance Already Active",
        message_template="Agent already has an active or pending instance",
        remediation="Wait for the current instance to finish, or destroy it first.",
    ),
    "E-4005": ErrorCode(
        code="E-4005",
        category=ErrorCategory.LIFECYCLE,
        title="Provisioning Job In Progress",
        message_template="A provisioning job is already in progress. Please wait for it to complete.",
        remediation="Wait for the running job to finish.",
        is_retryable=True,
    ),
    "E-4006": ErrorCode(
        code="E-4006",
        category=ErrorCategory.LIFECYCLE,
        title="Provisioning Job Timed Out",
        message_template="Timeout: No heartbeat for {seconds}s",
        remediation="Roll back the job and provision again.",
        is_retryable=True,
    ),
    # Credential errors (E-5xxx)
    "E-5001": ErrorCode(
        code="E-5001",
        category=ErrorCategory.CREDENTIALS,
        title="Reconnect Required",
        message_template="The {provider} connection has expired and could not be refreshed.",
        remediation="Reconnect the integration from the dashboard.",
    ),
    "E-5002": ErrorCode(
        code="E-5002",
        category=ErrorCategory.CREDENTIALS,
        title="Credential Decryption Failed",
        message_template="Stored credentials could not be decrypted.",
        remediation="Check AGENTHOST_CREDENTIAL_KEY, or reconnect the integration.",
    ),
}


def get_error(code: str) -> ErrorCode | None:
    """Get error definition by code.

    Args:
        code: Error code in E-XXXX format.

    Returns:
        ErrorCode if found, None otherwise.
    """
    return ERROR_REGISTRY.get(code)


def get_errors_by_category(category: ErrorCategory) -> list[ErrorCode]:
    """Get all errors in a category."""
    return [e for e in ERROR_REGISTRY.values() if e.category == category]


def format_message(code: str, **context: object) -> str:
    """Render the message template for code, keeping it intact on missing keys."""
    error = get_error(code)
    if error is None:
        return f"Unknown error: {code}"
    try:
        return error.message_template.format(**context)
    except (KeyError, ValueError):
        return error.message_template
