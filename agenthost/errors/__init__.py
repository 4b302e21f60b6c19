"""Error handling framework for agenthost.

This package provides:
- Typed domain exceptions mapped to HTTP status codes
- Error code registry with E-XXXX format codes
- Hosting provider error translation to friendly messages

Error categories:
- E-2xxx: Validation errors
- E-3xxx: Hosting provider and mesh errors
- E-4xxx: Lifecycle errors
- E-5xxx: Credential errors
"""

from agenthost.errors.domain import (
    ConflictError,
    DomainError,
    LifecycleError,
    NotFoundError,
    ValidationError,
)
from agenthost.errors.formatter import AgentHostError, format_error
from agenthost.errors.provider_translation import (
    PROVIDER_ERROR_MAP,
    extract_provider_error,
    is_resource_error,
    translate_provider_error,
)
from agenthost.errors.registry import (
    ERROR_REGISTRY,
    ErrorCategory,
    ErrorCode,
    format_message,
    get_error,
    get_errors_by_category,
)

__all__ = [
    # Domain
    "DomainError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "LifecycleError",
    # Registry
    "ErrorCode",
    "ErrorCategory",
    "ERROR_REGISTRY",
    "get_error",
    "get_errors_by_category",
    "format_message",
    # Provider translation
    "translate_provider_error",
    "extract_provider_error",
    "is_resource_error",
    "PROVIDER_ERROR_MAP",
    # Formatter
    "AgentHostError",
    "format_error",
]
