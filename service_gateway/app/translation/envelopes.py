"""
Dialect-native error envelopes.

Both dialects share one internal error taxonomy; only the outer JSON shape
differs. Dialect A nests ``{message, type, param, code}`` under ``error``;
dialect B uses ``{"type": "error", "error": {type, message}}``.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Tuple

from shared.errors import GatewayException, RateLimitError, UpstreamError

from .models import Dialect

_ERROR_TYPES_BY_STATUS = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    413: "request_too_large",
    422: "invalid_request_error",
    429: "rate_limit_error",
    529: "overloaded_error",
}


def error_type_for_status(status_code: int) -> str:
    if status_code in _ERROR_TYPES_BY_STATUS:
        return _ERROR_TYPES_BY_STATUS[status_code]
    if 400 <= status_code < 500:
        return "invalid_request_error"
    return "api_error"


def upstream_message(exc: UpstreamError) -> str:
    """Extract the provider's own error message from an upstream body."""
    body = exc.body
    if isinstance(body, (bytes, str)):
        text = body.decode("utf-8", "replace") if isinstance(body, bytes) else body
        try:
            body = json.loads(text)
        except ValueError:
            return text.strip() or exc.message
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    return exc.message


def describe(exc: BaseException) -> Tuple[int, str, str]:
    """Return (status code, error type, message) for any exception."""
    if isinstance(exc, UpstreamError):
        return exc.status_code, error_type_for_status(exc.status_code), upstream_message(exc)
    if isinstance(exc, GatewayException):
        return exc.status_code, error_type_for_status(exc.status_code), exc.message
    return 500, "api_error", "Internal server error"


def error_body(dialect: Dialect, exc: BaseException) -> Dict[str, Any]:
    status_code, error_type, message = describe(exc)
    if dialect is Dialect.ANTHROPIC:
        return {"type": "error", "error": {"type": error_type, "message": message}}

    code = None
    if isinstance(exc, RateLimitError):
        code = "rate_limit_exceeded"
    elif isinstance(exc, GatewayException):
        code = exc.code.lower()
    return {"error": {"message": message, "type": error_type, "param": None, "code": code}}


def render_error(dialect: Dialect, exc: BaseException) -> Tuple[int, Dict[str, Any], Dict[str, str]]:
    """Render ``exc`` as (status code, body, headers) in the inbound dialect."""
    status_code, _, _ = describe(exc)
    headers: Dict[str, str] = {}
    if isinstance(exc, RateLimitError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return status_code, error_body(dialect, exc), headers
