"""
Shared error handling for the LLM protocol gateway.
"""

import math
from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format for non-dialect routes."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


def current_trace_id() -> Optional[str]:
    """Return the hex trace id of the active span, if one is recording."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            return f"{span_context.trace_id:032x}"
    return None


class GatewayException(Exception):
    """Base exception for gateway errors."""

    status_code: int = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=current_trace_id(),
            code=self.code,
            message=self.message,
            details=self.details,
        )


class ValidationError(GatewayException):
    """Malformed inbound payload."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class AuthenticationError(GatewayException):
    """Upstream credential missing, expired, or refresh failed."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class RateLimitError(GatewayException):
    """Admission denied by the pacing gate."""

    status_code = 429

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: float = 0.0,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.retry_after = max(0.0, retry_after)
        merged = {"retry_after": self.retry_after_seconds}
        merged.update(details or {})
        super().__init__("RATE_LIMIT_ERROR", message, merged)

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds suitable for a Retry-After header."""
        return max(1, math.ceil(self.retry_after))


class UpstreamError(GatewayException):
    """Non-2xx answer from the upstream provider."""

    def __init__(
        self,
        status_code: int,
        message: str = "Upstream error",
        body: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.body = body
        merged = {"upstream_status": status_code}
        merged.update(details or {})
        super().__init__("UPSTREAM_ERROR", message, merged, status_code=status_code)


class TranslationError(GatewayException):
    """Unrecognized content-part/tool shape or unparseable streamed fragment."""

    status_code = 400

    def __init__(self, message: str = "Translation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("TRANSLATION_ERROR", message, details)
