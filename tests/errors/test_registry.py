"""Tests for the error code registry, translation and formatting."""

from agenthost.errors import (
    ERROR_REGISTRY,
    AgentHostError,
    ConflictError,
    ErrorCategory,
    LifecycleError,
    NotFoundError,
    extract_provider_error,
    format_error,
    format_message,
    get_errors_by_category,
    is_resource_error,
    translate_provider_error,
)


class TestRegistry:
    """Tests for registry contents and lookup."""

    def test_codes_match_keys(self):
        for key, error in ERROR_REGISTRY.items():
            assert error.code == key
            assert key.startswith("E-")

    def test_categories_follow_code_prefix(self):
        prefixes = {
            ErrorCategory.VALIDATION: "E-2",
            ErrorCategory.PROVIDER: "E-3",
            ErrorCategory.LIFECYCLE: "E-4",
            ErrorCategory.CREDENTIALS: "E-5",
        }
        for category, prefix in prefixes.items():
            for error in get_errors_by_category(category):
                assert error.code.startswith(prefix)

    def test_format_message_substitutes_context(self):
        message = format_message("E-4001", minutes=10)
        assert "10 minutes" in message

    def test_format_message_keeps_template_on_missing_key(self):
        assert "{minutes}" in format_message("E-4001")

    def test_unknown_code(self):
        assert format_message("E-9999") == "Unknown error: E-9999"


class TestProviderTranslation:
    """Tests for provider error translation."""

    def test_server_limit_maps_to_friendly_message(self):
        code, message, _ = translate_provider_error("resource_limit_exceeded", "server limit reached")
        assert code == "E-3003"
        assert message.startswith("Server limit reached on hosting provider.")

    def test_uniqueness_error(self):
        code, message, _ = translate_provider_error("uniqueness_error", None)
        assert code == "E-3004"
        assert "already exists" in message

    def test_message_pattern_used_when_code_unknown(self):
        code, _, _ = translate_provider_error("weird", "Too Many Requests for project")
        assert code == "E-3002"

    def test_fallback_code(self):
        code, message, _ = translate_provider_error(None, "unexpected thing")
        assert code == "E-3008"
        assert "unexpected thing" not in message

    def test_extract_provider_error(self):
        body = {"error": {"code": "invalid_input", "message": "bad image"}}
        assert extract_provider_error(body) == ("invalid_input", "bad image")
        assert extract_provider_error({"server": {}}) == (None, None)
        assert extract_provider_error(["not", "a", "dict"]) == (None, None)

    def test_resource_errors(self):
        assert is_resource_error("E-3003")
        assert is_resource_error("E-3004")
        assert not is_resource_error("E-3001")


class TestAgentHostError:
    def test_from_code(self):
        error = AgentHostError.from_code("E-4001", minutes=10)
        assert error.code == "E-4001"
        assert "10 minutes" in error.message
        assert error.is_retryable is True
        assert error.remediation

    def test_from_message_keeps_text(self):
        error = AgentHostError.from_message("E-3003", "Server limit reached.")
        assert error.message == "Server limit reached."
        assert error.remediation == ERROR_REGISTRY["E-3003"].remediation

    def test_from_message_unknown_code(self):
        error = AgentHostError.from_message("E-9999", "odd")
        assert error.remediation == "Contact support."

    def test_format_error(self):
        text = format_error(AgentHostError.from_code("E-4002"))
        assert text.splitlines()[0] == "E-4002: No running instance to stop"
        assert "Suggestion:" in text


class TestDomainErrors:
    def test_not_found_message(self):
        error = NotFoundError("Agent", "a-1")
        assert str(error) == "Agent 'a-1' not found"
        assert error.identifier == "a-1"

    def test_lifecycle_error_is_conflict(self):
        error = LifecycleError("a-1", "No running instance to stop")
        assert isinstance(error, ConflictError)
        assert error.agent_id == "a-1"
