"""
Error handling decorators and utilities for chatrelay.

Provides the decorator that shields tool backends from raising,
plus the FastAPI exception handler that maps ChatRelayError to HTTP.
"""

import logging
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .exceptions import ChatRelayError
from .response import error_response, sanitize_error_message

# Type variable for decorated functions
F = TypeVar("F", bound=Callable[..., Any])


def handle_async_tool_errors(tool_name: str, logger: Optional[logging.Logger] = None):
    """Turn any exception raised by an async tool backend into error_response().

    The wrapped coroutine never raises; failures are logged with stack
    traces and come back as {"success": False, "error": {...}}.

    Example:
        >>> @handle_async_tool_errors("web_search")
        ... async def execute_web_search(client, query):
        ...     answer = await client.search(query)
        ...     return {"success": True, "content": answer}
    """

    def decorator(func: F) -> F:
        log = logger or logging.getLogger(f"chatrelay.{tool_name}")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> dict:
            try:
                return await func(*args, **kwargs)
            except ChatRelayError as e:
                log.error(f"[{tool_name}] {e.code.value}: {e.message}", exc_info=True)
                return error_response(e, tool=tool_name)
            except Exception as e:
                log.error(f"[{tool_name}] Unexpected error: {e}", exc_info=True)
                return error_response(e, tool=tool_name)

        return wrapper  # type: ignore

    return decorator


def log_error(
    logger: logging.Logger, error: Exception, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log an error with consistent formatting.

    Example:
        >>> log_error(logger, err, context="Turn")
        # Logs: "[Turn] LLM_UNAVAILABLE: Provider request failed"
    """
    if isinstance(error, ChatRelayError):
        message = f"{error.code.value}: {error.message}"
    else:
        message = str(error)

    if context:
        message = f"[{context}] {message}"

    logger.error(message, exc_info=include_traceback)


def register_exception_handlers(app: FastAPI, production: bool = False) -> None:
    """Map ChatRelayError subclasses onto HTTP responses of the form {"error": message}."""
    log = logging.getLogger("chatrelay.http")

    @app.exception_handler(ChatRelayError)
    async def _chatrelay_error_handler(request: Request, exc: ChatRelayError):
        if exc.status_code >= 500:
            log_error(log, exc, context=request.url.path)
            message = sanitize_error_message(exc, production=production)
        else:
            message = exc.message
        return JSONResponse(status_code=exc.status_code, content={"error": message, "code": exc.code.value})
