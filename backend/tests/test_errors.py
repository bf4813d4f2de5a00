"""
Tests for the chatrelay error handling module.
"""

import asyncio
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from errors import (
    ErrorCode,
    ChatRelayError,
    AuthenticationError,
    ValidationError,
    NotFoundError,
    LLMError,
    ExternalServiceError,
    error_response,
    success_response,
    format_error_for_llm,
    sanitize_error_message,
    handle_async_tool_errors,
    register_exception_handlers,
)


class TestErrorCodes:
    """Test error code enum."""

    def test_error_codes_are_strings(self):
        """Error codes should be string values."""
        assert ErrorCode.NOT_FOUND_CONVERSATION.value == "NOT_FOUND_CONVERSATION"
        assert ErrorCode.LLM_STREAM_ERROR.value == "LLM_STREAM_ERROR"

    def test_error_codes_have_categories(self):
        """Error codes should follow category naming convention."""
        auth_codes = [c for c in ErrorCode if c.value.startswith("AUTH_")]
        assert len(auth_codes) == 3

        validation_codes = [c for c in ErrorCode if c.value.startswith("VALIDATION_")]
        assert len(validation_codes) >= 3


class TestChatRelayError:
    """Test base ChatRelayError exception."""

    def test_basic_creation(self):
        """Create basic error with message."""
        err = ChatRelayError("Test error")
        assert err.message == "Test error"
        assert err.details is None
        assert err.code == ErrorCode.INTERNAL_UNEXPECTED
        assert err.recoverable is False
        assert err.status_code == 500

    def test_with_context(self):
        """Create error with additional context."""
        err = ChatRelayError("Test error", foo="bar", count=42)
        assert err.context == {"foo": "bar", "count": 42}

    def test_str_representation(self):
        """String representation includes message and details."""
        assert str(ChatRelayError("Test error", details="More info")) == "Test error - More info"
        assert str(ChatRelayError("Test error")) == "Test error"

    def test_to_dict(self):
        """Convert error to dictionary."""
        d = ChatRelayError("Test error", details="More info", key="value").to_dict()
        assert d["code"] == "INTERNAL_UNEXPECTED"
        assert d["message"] == "Test error"
        assert d["details"] == "More info"
        assert d["recoverable"] is False
        assert d["context"] == {"key": "value"}

    def test_code_override(self):
        """Class defaults can be overridden per instance."""
        err = ChatRelayError("Bad config", code=ErrorCode.INTERNAL_CONFIG_ERROR, recoverable=True)
        assert err.code == ErrorCode.INTERNAL_CONFIG_ERROR
        assert err.recoverable is True


class TestAuthenticationError:
    """Test AuthenticationError exception."""

    def test_reasons_map_to_codes(self):
        assert AuthenticationError("x", reason="missing").code == ErrorCode.AUTH_MISSING_TOKEN
        assert AuthenticationError("x", reason="expired").code == ErrorCode.AUTH_TOKEN_EXPIRED
        assert AuthenticationError("x").code == ErrorCode.AUTH_INVALID_TOKEN

    def test_status_code(self):
        assert AuthenticationError("Unauthorized").status_code == 401


class TestValidationError:
    """Test ValidationError exception."""

    def test_default_code(self):
        err = ValidationError("Missing conversationId or content")
        assert err.code == ErrorCode.VALIDATION_MISSING_PARAM
        assert err.recoverable is True
        assert err.status_code == 400

    def test_with_parameter_info(self):
        """Include parameter details in context."""
        err = ValidationError("Too many attachments (max 5)", parameter="attachments", expected="<= 5", received="6")
        assert err.context["parameter"] == "attachments"
        assert err.context["expected"] == "<= 5"
        assert err.context["received"] == "6"


class TestNotFoundError:
    """Test NotFoundError exception."""

    def test_default_code(self):
        err = NotFoundError("Missing")
        assert err.code == ErrorCode.NOT_FOUND_RESOURCE
        assert err.status_code == 404

    def test_conversation_resource_type(self):
        err = NotFoundError("Conversation not found or access denied", resource_type="conversation")
        assert err.code == ErrorCode.NOT_FOUND_CONVERSATION

    def test_attachment_resource_type(self):
        err = NotFoundError("Attachment not found", resource_type="attachment")
        assert err.code == ErrorCode.NOT_FOUND_ATTACHMENT

    def test_with_resource_id(self):
        err = NotFoundError("Missing", resource_type="conversation", resource_id="c1")
        assert err.context["resource_id"] == "c1"
        assert err.context["resource_type"] == "conversation"


class TestLLMError:
    """Test LLMError exception."""

    def test_default_code(self):
        err = LLMError("Provider down")
        assert err.code == ErrorCode.LLM_UNAVAILABLE
        assert err.status_code == 502

    def test_error_types(self):
        assert LLMError("x", error_type="timeout").code == ErrorCode.LLM_TIMEOUT
        assert LLMError("x", error_type="auth").code == ErrorCode.LLM_AUTH_FAILED
        assert LLMError("x", error_type="stream").code == ErrorCode.LLM_STREAM_ERROR

    def test_upstream_status_in_context(self):
        """Upstream status goes to context; the HTTP status stays 502."""
        err = LLMError("Provider request failed", model="claude", status_code=503)
        assert err.context == {"model": "claude", "status_code": 503}
        assert err.status_code == 502


class TestExternalServiceError:
    """Test ExternalServiceError exception."""

    def test_default_code(self):
        assert ExternalServiceError("Down").code == ErrorCode.EXTERNAL_NETWORK_ERROR

    def test_search_service(self):
        assert ExternalServiceError("x", service="search").code == ErrorCode.EXTERNAL_SEARCH_FAILED

    def test_database_service(self):
        assert ExternalServiceError("x", service="database").code == ErrorCode.EXTERNAL_DATABASE_FAILED


class TestErrorResponse:
    """Test error_response function."""

    def test_chatrelay_error_response(self):
        err = NotFoundError("No conversation", details="Create one first", resource_type="conversation")
        resp = error_response(err, tool="web_search")

        assert resp["success"] is False
        assert resp["error"]["code"] == "NOT_FOUND_CONVERSATION"
        assert resp["error"]["message"] == "No conversation"
        assert resp["error"]["details"] == "Create one first"
        assert resp["error"]["tool"] == "web_search"
        assert resp["error"]["recoverable"] is True

    def test_generic_exception_response(self):
        resp = error_response(ValueError("Bad value"), tool="test")
        assert resp["error"]["code"] == "INTERNAL_UNEXPECTED"
        assert resp["error"]["message"] == "Bad value"
        assert resp["error"]["recoverable"] is False

    def test_without_context(self):
        err = NotFoundError("Missing", resource_id="abc123")
        assert error_response(err, include_context=False)["error"]["context"] is None


class TestSuccessResponse:
    """Test success_response function."""

    def test_basic_success(self):
        assert success_response() == {"success": True}

    def test_with_kwargs_and_data(self):
        resp = success_response({"items": [1, 2]}, count=2)
        assert resp == {"success": True, "items": [1, 2], "count": 2}


class TestFormatErrorForLLM:
    """Test format_error_for_llm function."""

    def test_chatrelay_error_with_details(self):
        err = ExternalServiceError("Search request failed", details="HTTP 503", service="search")
        assert format_error_for_llm(err) == "Search failed: Search request failed (HTTP 503)"

    def test_generic_exception(self):
        assert format_error_for_llm(TimeoutError("timed out"), tool="web_search") == "Search failed: timed out"

    def test_other_tool_prefix(self):
        assert format_error_for_llm(ValueError("nope"), tool="calculator") == "calculator failed: nope"


class TestSanitizeErrorMessage:
    """Test sanitize_error_message function."""

    def test_production_hides_details(self):
        msg = sanitize_error_message(RuntimeError("db password wrong"), production=True, fallback="Failed")
        assert msg == "Failed"

    def test_development_passes_message(self):
        assert sanitize_error_message(LLMError("Provider request failed", details="x")) == "Provider request failed"
        assert sanitize_error_message(RuntimeError("boom")) == "boom"

    def test_empty_message_uses_fallback(self):
        assert sanitize_error_message(RuntimeError(), fallback="Failed") == "Failed"


class TestAsyncHandleToolErrors:
    """Test handle_async_tool_errors decorator."""

    def test_decorator_creates_wrapper(self):
        @handle_async_tool_errors("test")
        async def my_func():
            return {"success": True}

        assert asyncio.iscoroutinefunction(my_func)
        assert my_func.__name__ == "my_func"

    def test_exception_converted(self):
        @handle_async_tool_errors("web_search")
        async def my_func():
            raise ExternalServiceError("Search request failed", service="search")

        result = asyncio.run(my_func())
        assert result["success"] is False
        assert result["error"]["code"] == "EXTERNAL_SEARCH_FAILED"
        assert result["error"]["tool"] == "web_search"

    def test_foreign_exception_converted(self):
        @handle_async_tool_errors("web_search")
        async def my_func():
            raise KeyError("choices")

        result = asyncio.run(my_func())
        assert result["error"]["code"] == "INTERNAL_UNEXPECTED"
        assert result["error"]["recoverable"] is False

    def test_logging(self, caplog):
        """Errors are logged with stack trace."""

        @handle_async_tool_errors("web_search")
        async def my_func():
            raise NotFoundError("Not found")

        with caplog.at_level(logging.ERROR):
            asyncio.run(my_func())

        assert "NOT_FOUND_RESOURCE" in caplog.text
        assert "Not found" in caplog.text


def _app(production: bool) -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app, production=production)

    @app.get("/missing")
    async def missing():
        raise NotFoundError("Conversation not found or access denied", resource_type="conversation")

    @app.get("/invalid")
    async def invalid():
        raise ValidationError("Missing conversationId or content")

    @app.get("/unauthorized")
    async def unauthorized():
        raise AuthenticationError("Unauthorized", reason="missing")

    @app.get("/upstream")
    async def upstream():
        raise LLMError("Provider request failed", details="secret-host:443 refused")

    return app


class TestRegisterExceptionHandlers:
    """Test the HTTP mapping of ChatRelayError subclasses."""

    def test_status_mapping(self):
        with TestClient(_app(production=False)) as client:
            assert client.get("/missing").status_code == 404
            assert client.get("/invalid").status_code == 400
            assert client.get("/unauthorized").status_code == 401
            assert client.get("/upstream").status_code == 502

    def test_body_shape(self):
        with TestClient(_app(production=False)) as client:
            body = client.get("/missing").json()
        assert body == {"error": "Conversation not found or access denied", "code": "NOT_FOUND_CONVERSATION"}

    def test_production_hides_server_errors(self):
        with TestClient(_app(production=True)) as client:
            body = client.get("/upstream").json()
            client_error = client.get("/invalid").json()
        assert "secret-host" not in body["error"]
        assert body["code"] == "LLM_UNAVAILABLE"
        assert client_error["error"] == "Missing conversationId or content"
