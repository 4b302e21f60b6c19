"""Typed domain exceptions for API error mapping.

The API maps these to HTTP status codes by type (see the exception
handlers in agenthost.api.main) instead of matching on message strings.

Usage:
    raise NotFoundError("Agent", agent_id)
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class ConflictError(DomainError):
    """Resource conflict (e.g., a second active instance). Maps to HTTP 409."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ValidationError(DomainError):
    """Validation failure. Maps to HTTP 400."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class LifecycleError(ConflictError):
    """A lifecycle operation was requested in the wrong instance state.

    Raised by stop/start when no instance is in the required state.
    Maps to HTTP 409.
    """

    def __init__(self, agent_id: str, message: str) -> None:
        super().__init__(message)
        self.agent_id = agent_id
