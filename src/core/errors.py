# src/core/errors.py
"""User-facing error responses that never expose internal details."""

import logging

from starlette.responses import PlainTextResponse, Response

logger = logging.getLogger(__name__)

ERROR_MESSAGES = {
    "ConnectionError": "Connection problem. Please try again later.",
    "TimeoutError": "The request took too long. Please try again.",
    "SessionStoreError": "Your session could not be loaded. Please try again later.",
}

DEFAULT_ERROR_MESSAGE = "Something went wrong. Please try again later."


def get_safe_error_message(error: Exception, context: str = "") -> str:
    """Return a safe error message that doesn't expose internal details"""
    # Full error is logged internally
    logger.error(f"Error in {context}: {type(error).__name__}: {str(error)}")

    for cls in type(error).__mro__:
        if cls.__name__ in ERROR_MESSAGES:
            return ERROR_MESSAGES[cls.__name__]
    return DEFAULT_ERROR_MESSAGE


def internal_error_response(error: Exception, context: str = "") -> Response:
    return PlainTextResponse(get_safe_error_message(error, context), status_code=500)


def timeout_response() -> Response:
    return PlainTextResponse(ERROR_MESSAGES["TimeoutError"], status_code=504)
