"""
chatrelay Error Handling Module

Provides standardized error codes, exceptions, and response builders
for consistent error handling across the application.

Usage:
    from errors import (
        # Error codes
        ErrorCode,

        # Exceptions
        ChatRelayError,
        AuthenticationError,
        ValidationError,
        NotFoundError,
        LLMError,
        ExternalServiceError,

        # Response builders
        error_response,
        success_response,
        format_error_for_llm,
        sanitize_error_message,

        # Decorators
        handle_async_tool_errors,
        log_error,
        register_exception_handlers,
    )

Example:
    from errors import NotFoundError, ValidationError

    async def start_turn(store, user_id, conversation_id, content):
        if not conversation_id or not content:
            raise ValidationError(
                "Missing conversationId or content",
                parameter="conversationId",
            )

        conversation = await store.get_conversation(conversation_id, user_id)
        if conversation is None:
            raise NotFoundError(
                "Conversation not found or access denied",
                resource_type="conversation",
                resource_id=conversation_id,
            )
"""

from .codes import ErrorCode
from .exceptions import (
    ChatRelayError,
    AuthenticationError,
    ValidationError,
    NotFoundError,
    LLMError,
    ExternalServiceError,
)
from .response import (
    error_response,
    success_response,
    format_error_for_llm,
    sanitize_error_message,
)
from .handlers import (
    handle_async_tool_errors,
    log_error,
    register_exception_handlers,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Exceptions
    "ChatRelayError",
    "AuthenticationError",
    "ValidationError",
    "NotFoundError",
    "LLMError",
    "ExternalServiceError",
    # Response builders
    "error_response",
    "success_response",
    "format_error_for_llm",
    "sanitize_error_message",
    # Decorators
    "handle_async_tool_errors",
    "log_error",
    "register_exception_handlers",
]
