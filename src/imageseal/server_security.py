"""Security middleware and error handling for the imageseal server.

Provides:
- Request ID tracing
- Security headers
- Error taxonomy with consistent envelopes
- Caller identity extraction
"""

from __future__ import annotations

import logging
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
MAX_USER_ID_LENGTH = 256


class ErrorCategory(str, Enum):
    """Error categories for classification."""

    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INTERNAL = "internal"


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class ErrorEnvelope:
    """Standard error response envelope."""

    success: bool = False
    error_id: str = ""
    request_id: str = ""
    timestamp: str = ""
    category: ErrorCategory = ErrorCategory.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.ERROR
    message: str = ""
    code: str = ""
    traceback: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "error_id": self.error_id,
            "request_id": self.request_id,
            "timestamp": self.timestamp,
            "error": {
                "category": self.category.value,
                "severity": self.severity.value,
                "message": self.message,
                "code": self.code,
            },
            "meta": {
                "traceback": self.traceback if self.traceback else None,
            },
        }


class SecurityMiddleware(BaseHTTPMiddleware):
    """Security headers middleware."""

    def __init__(self, app, allow_iframe: bool = False, strict_transport: bool = True):
        super().__init__(app)
        self.allow_iframe = allow_iframe
        self.strict_transport = strict_transport

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Process request and add security headers."""
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN" if self.allow_iframe else "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; img-src 'self';"

        # Strict Transport Security (HTTPS only)
        if self.strict_transport:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Request ID middleware for tracing."""

    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        """Add request ID to response."""
        request_id = request.headers.get(self.header_name) or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[self.header_name] = request_id

        return response


def create_error_response(
    error_id: str,
    request_id: str,
    message: str,
    category: ErrorCategory = ErrorCategory.INTERNAL,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    error: BaseException | None = None,
    include_traceback: bool = False,
) -> dict[str, Any]:
    """Create a standardized error response.

    Args:
        error_id: Unique error identifier
        request_id: Request trace ID
        message: Message shown to the client
        category: Error category
        severity: Error severity
        error: Exception whose traceback may be attached
        include_traceback: Whether to include the traceback of error

    Returns:
        Error envelope as dictionary
    """
    envelope = ErrorEnvelope(
        error_id=error_id,
        request_id=request_id,
        timestamp=datetime.now(timezone.utc).isoformat(),
        category=category,
        severity=severity,
        message=message,
        code=f"IMAGESEAL_{category.value.upper()}_{severity.value.upper()}",
    )

    if include_traceback and error is not None:
        envelope.traceback = "".join(traceback.format_exception(type(error), error, error.__traceback__))

    return envelope.to_dict()


class ValidationError(Exception):
    """Validation error with structured details."""

    def __init__(self, message: str, field: str | None = None, code: str = "VALIDATION_ERROR"):
        super().__init__(message)
        self.field = field
        self.code = code


class AuthenticationError(Exception):
    """Authentication failure."""

    def __init__(self, message: str = "Authentication failed", code: str = "AUTH_FAILED"):
        super().__init__(message)
        self.code = code


def require_user_id(value: str | None) -> str:
    """Validate the identity header value.

    The value is trusted as-is once it is present and well formed.

    Raises:
        AuthenticationError: If the header is missing or blank
        ValidationError: If the value is oversized or contains control characters
    """
    if value is None or not value.strip():
        raise AuthenticationError(f"Missing {USER_ID_HEADER} header", code="IDENTITY_MISSING")

    user_id = value.strip()
    if len(user_id) > MAX_USER_ID_LENGTH:
        raise ValidationError("User id too long", field=USER_ID_HEADER)
    if any(ord(ch) < 32 for ch in user_id):
        raise ValidationError("User id contains control characters", field=USER_ID_HEADER)
    return user_id
