"""
Error codes for chatrelay.

Provides a standardized taxonomy of error codes organized by category.
Use these codes consistently across all error responses.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for chatrelay.

    Categories:
    - AUTH_*: Identity resolution and session errors
    - VALIDATION_*: Input validation errors
    - NOT_FOUND_*: Resource not found errors
    - LLM_*: Language model provider errors
    - EXTERNAL_*: External service errors
    - INTERNAL_*: Internal/unexpected errors
    """

    # Authentication errors (identity collaborator)
    AUTH_MISSING_TOKEN = "AUTH_MISSING_TOKEN"
    AUTH_INVALID_TOKEN = "AUTH_INVALID_TOKEN"
    AUTH_TOKEN_EXPIRED = "AUTH_TOKEN_EXPIRED"

    # Validation errors (input checking)
    VALIDATION_MISSING_PARAM = "VALIDATION_MISSING_PARAM"
    VALIDATION_INVALID_TYPE = "VALIDATION_INVALID_TYPE"
    VALIDATION_OUT_OF_RANGE = "VALIDATION_OUT_OF_RANGE"
    VALIDATION_INVALID_FORMAT = "VALIDATION_INVALID_FORMAT"

    # Not found errors (missing resources)
    NOT_FOUND_CONVERSATION = "NOT_FOUND_CONVERSATION"
    NOT_FOUND_ATTACHMENT = "NOT_FOUND_ATTACHMENT"
    NOT_FOUND_RESOURCE = "NOT_FOUND_RESOURCE"

    # LLM errors (provider interactions)
    LLM_UNAVAILABLE = "LLM_UNAVAILABLE"
    LLM_TIMEOUT = "LLM_TIMEOUT"
    LLM_AUTH_FAILED = "LLM_AUTH_FAILED"
    LLM_RESPONSE_INVALID = "LLM_RESPONSE_INVALID"
    LLM_STREAM_ERROR = "LLM_STREAM_ERROR"

    # External service errors
    EXTERNAL_SEARCH_FAILED = "EXTERNAL_SEARCH_FAILED"
    EXTERNAL_DATABASE_FAILED = "EXTERNAL_DATABASE_FAILED"
    EXTERNAL_NETWORK_ERROR = "EXTERNAL_NETWORK_ERROR"

    # Internal errors (unexpected failures)
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"
    INTERNAL_CONFIG_ERROR = "INTERNAL_CONFIG_ERROR"
    INTERNAL_STATE_ERROR = "INTERNAL_STATE_ERROR"
