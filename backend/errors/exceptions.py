"""
Custom exception hierarchy for chatrelay.

All exceptions inherit from ChatRelayError and include:
- code: ErrorCode for categorization
- message: Human-readable error message
- details: Optional additional context
- recoverable: Whether the user can retry/fix the issue
- context: Additional key-value pairs for debugging
"""

from typing import Any, Optional
from .codes import ErrorCode


class ChatRelayError(Exception):
    """Base exception for all chatrelay errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the user
        recoverable: Whether the error can be resolved by user action
        context: Additional debugging information
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    recoverable: bool = False
    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class AuthenticationError(ChatRelayError):
    """Inbound request or connection could not be resolved to a user."""

    code = ErrorCode.AUTH_INVALID_TOKEN
    recoverable = False
    status_code = 401

    def __init__(self, message: str, details: Optional[str] = None, reason: Optional[str] = None, **context: Any):
        if reason == "missing":
            code = ErrorCode.AUTH_MISSING_TOKEN
        elif reason == "expired":
            code = ErrorCode.AUTH_TOKEN_EXPIRED
        else:
            code = ErrorCode.AUTH_INVALID_TOKEN
        super().__init__(message, details, code=code, **context)


class ValidationError(ChatRelayError):
    """Error during input validation."""

    code = ErrorCode.VALIDATION_MISSING_PARAM
    recoverable = True
    status_code = 400

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        parameter: Optional[str] = None,
        expected: Optional[str] = None,
        received: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if parameter:
            ctx["parameter"] = parameter
        if expected:
            ctx["expected"] = expected
        if received:
            ctx["received"] = received
        super().__init__(message, details, **ctx)


class NotFoundError(ChatRelayError):
    """Error when a required resource is not found (or not owned by the caller)."""

    code = ErrorCode.NOT_FOUND_RESOURCE
    recoverable = True
    status_code = 404

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **context: Any,
    ):
        if resource_type == "conversation":
            code = ErrorCode.NOT_FOUND_CONVERSATION
        elif resource_type == "attachment":
            code = ErrorCode.NOT_FOUND_ATTACHMENT
        else:
            code = ErrorCode.NOT_FOUND_RESOURCE

        ctx = {**context}
        if resource_type:
            ctx["resource_type"] = resource_type
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message, details, code=code, **ctx)


class LLMError(ChatRelayError):
    """Error during LLM provider interactions."""

    code = ErrorCode.LLM_UNAVAILABLE
    recoverable = False
    status_code = 502

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        model: Optional[str] = None,
        error_type: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        if error_type == "timeout":
            code = ErrorCode.LLM_TIMEOUT
        elif error_type == "auth":
            code = ErrorCode.LLM_AUTH_FAILED
        elif error_type == "invalid":
            code = ErrorCode.LLM_RESPONSE_INVALID
        elif error_type == "stream":
            code = ErrorCode.LLM_STREAM_ERROR
        else:
            code = ErrorCode.LLM_UNAVAILABLE

        ctx = {**context}
        if model:
            ctx["model"] = model
        if status_code:
            ctx["status_code"] = status_code
        super().__init__(message, details, code=code, **ctx)


class ExternalServiceError(ChatRelayError):
    """Error with external services (search deployment, database, etc.)."""

    code = ErrorCode.EXTERNAL_NETWORK_ERROR
    recoverable = True
    status_code = 502

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        service: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        if service == "search":
            code = ErrorCode.EXTERNAL_SEARCH_FAILED
        elif service == "database":
            code = ErrorCode.EXTERNAL_DATABASE_FAILED
        else:
            code = ErrorCode.EXTERNAL_NETWORK_ERROR

        ctx = {**context}
        if service:
            ctx["service"] = service
        if status_code:
            ctx["status_code"] = status_code
        super().__init__(message, details, code=code, **ctx)
