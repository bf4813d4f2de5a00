"""
Standard error response builders for chatrelay.

Provides consistent response formats for REST errors, channel error events
and tool results fed back to the model.
"""

from typing import Any, Optional
from .codes import ErrorCode
from .exceptions import ChatRelayError

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."


def error_response(error: ChatRelayError | Exception, tool: Optional[str] = None, include_context: bool = True) -> dict:
    """Build a standard error response dictionary.

    Args:
        error: The exception to convert to a response
        tool: Optional tool name for context
        include_context: Whether to include the context dict (disable for privacy)

    Returns:
        Standard error response dict with success=False

    Example:
        >>> from errors import ValidationError, error_response
        >>> err = ValidationError("Missing conversationId or content", parameter="conversationId")
        >>> error_response(err)
        {
            "success": False,
            "error": {
                "code": "VALIDATION_MISSING_PARAM",
                "message": "Missing conversationId or content",
                "details": None,
                "tool": None,
                "recoverable": True,
                "context": {"parameter": "conversationId"}
            }
        }
    """
    if isinstance(error, ChatRelayError):
        return {
            "success": False,
            "error": {
                "code": error.code.value,
                "message": error.message,
                "details": error.details,
                "tool": tool,
                "recoverable": error.recoverable,
                "context": error.context if include_context else None,
            },
        }

    # Fallback for foreign exceptions
    return {
        "success": False,
        "error": {
            "code": ErrorCode.INTERNAL_UNEXPECTED.value,
            "message": str(error),
            "details": None,
            "tool": tool,
            "recoverable": False,
            "context": None,
        },
    }


def success_response(data: Optional[dict] = None, **kwargs: Any) -> dict:
    """Build a standard success response dictionary.

    Example:
        >>> success_response(id="c1")
        {"success": True, "id": "c1"}
    """
    response = {"success": True}

    if data:
        response.update(data)
    if kwargs:
        response.update(kwargs)

    return response


def format_error_for_llm(error: ChatRelayError | Exception, tool: Optional[str] = None) -> str:
    """Format a tool failure as the placeholder text handed back to the model.

    Args:
        error: The exception to format
        tool: Optional tool name for context

    Returns:
        Formatted error string, e.g. "Search failed: timed out"
    """
    prefix = "Search failed" if tool in (None, "web_search") else f"{tool} failed"
    if isinstance(error, ChatRelayError):
        text = error.message
        if error.details:
            text = f"{text} ({error.details})"
        return f"{prefix}: {text}"

    return f"{prefix}: {str(error)}"


def sanitize_error_message(
    error: Exception | str, production: bool = False, fallback: str = GENERIC_ERROR_MESSAGE
) -> str:
    """User-facing message for an unexpected error.

    Production deployments never leak exception text; everywhere else the
    message is passed through to help debugging.
    """
    if production:
        return fallback
    if isinstance(error, ChatRelayError):
        return error.message
    return str(error) or fallback
