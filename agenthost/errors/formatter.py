"""Application error type carrying a registry code.

AgentHostError is what the API's exception handler renders: a code, a
user-safe message and a remediation hint.
"""

from dataclasses import dataclass, field

from agenthost.errors.registry import format_message, get_error


@dataclass
class AgentHostError(Exception):
    """Application error with code, message, and context.

    Attributes:
        code: Error code in E-XXXX format.
        message: Human-readable error message.
        remediation: Action user should take to resolve.
        is_retryable: Whether the operation can be retried without user action.
        details: Additional context dictionary.
    """

    code: str
    message: str
    remediation: str
    is_retryable: bool = False
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    @classmethod
    def from_code(cls, code: str, **context: object) -> "AgentHostError":
        """Create an error from a registry code with template substitution.

        Args:
            code: Error code in E-XXXX format.
            **context: Values for message template placeholders.

        Returns:
            AgentHostError with the formatted message.
        """
        error_def = get_error(code)
        if error_def is None:
            return cls(code=code, message=f"Unknown error: {code}", remediation="Contact support.")
        return cls(
            code=code,
            message=format_message(code, **context),
            remediation=error_def.remediation,
            is_retryable=error_def.is_retryable,
            details=dict(context),
        )

    @classmethod
    def from_message(cls, code: str, message: str) -> "AgentHostError":
        """Wrap an already-formatted message, taking remediation from the registry."""
        error_def = get_error(code)
        if error_def is None:
            return cls(code=code, message=message, remediation="Contact support.")
        return cls(
            code=code,
            message=message,
            remediation=error_def.remediation,
            is_retryable=error_def.is_retryable,
        )


def format_error(error: AgentHostError) -> str:
    """Format an error for terminal display.

    Returns:
        Multi-line string with code, message and remediation.
    """
    lines = [f"{error.code}: {error.message}"]
    if error.remediation:
        lines.append(f"  Suggestion: {error.remediation}")
    return "\n".join(lines)
