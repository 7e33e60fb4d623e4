"""
Relay error taxonomy and JSON error responses.

Every failure the relay can surface is a ``RelayError`` subclass carrying
the HTTP status to use *before* streaming starts, a machine-readable
``kind`` and a client-safe message:

    - ValidationError (400): empty or invalid input, user-correctable
    - NotFoundError (404): conversation missing or not owned by the caller
    - UpstreamConnectError (500): generation stream could not be opened
    - UpstreamStreamError (500): stream dropped or broke after it opened
    - UpstreamTimeoutError (500): connect or read exceeded its timeout
    - PersistenceError (500): transcript append failed

Pre-stream errors render as ``{"message": "..."}``. Once the event stream
is committed the same errors are reported as one terminal error event
instead (see ``chat_relay.services.downstream``).

Last Grunted: 10/18/2026 10:00:00 AM UTC
"""
from typing import Optional
from fastapi.responses import JSONResponse
from pydantic import BaseModel


# ============================================================================
# Error Models
# ============================================================================

class ErrorBody(BaseModel):
    """
    JSON body of every pre-stream error response.

    Attributes:
        message: Human-readable error description

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    message: str


# ============================================================================
# Exceptions
# ============================================================================

class RelayError(Exception):
    """Base class for relay failures."""

    status_code: int = 500
    kind: str = "internal"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[str] = None):
        self.message = message or self.default_message
        # Internal detail for logs, never sent to the client
        self.detail = detail
        super().__init__(self.message if detail is None else f"{self.message} ({detail})")


class ValidationError(RelayError):
    status_code = 400
    kind = "validation"
    default_message = "Message is required"


class NotFoundError(RelayError):
    status_code = 404
    kind = "not_found"
    default_message = "Conversation not found"


class UpstreamError(RelayError):
    """Anything that went wrong talking to the completion provider."""

    kind = "upstream"
    default_message = "Stream error"


class UpstreamConnectError(UpstreamError):
    kind = "upstream_connect"
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[str] = None,
        upstream_status: Optional[int] = None,
    ):
        self.upstream_status = upstream_status
        super().__init__(message, detail=detail)


class UpstreamStreamError(UpstreamError):
    kind = "upstream_stream"


class UpstreamTimeoutError(UpstreamError):
    kind = "upstream_timeout"
    default_message = "Upstream timed out"


class PersistenceError(RelayError):
    kind = "persistence"
    default_message = "Internal server error"


# ============================================================================
# Error Response Factory
# ============================================================================

def create_error_response(message: str, status_code: int = 400) -> JSONResponse:
    """
    Create a ``{"message": ...}`` error response.

    Args:
        message: Human-readable error description
        status_code: HTTP status code

    Returns:
        JSONResponse with the error body

    Last Grunted: 10/18/2026 10:00:00 AM UTC
    """
    return JSONResponse(
        status_code=status_code,
        content=ErrorBody(message=message).model_dump(),
    )


def relay_error_response(exc: RelayError) -> JSONResponse:
    """Render a RelayError raised before any event was streamed."""
    return create_error_response(exc.message, status_code=exc.status_code)


def internal_error() -> JSONResponse:
    """500 response that does not leak internal details."""
    return create_error_response(RelayError.default_message, status_code=500)
