"""
Custom Exception Classes for the SSE dispatch service

The dispatch core never raises for steady-state failures; these exceptions
cover sink-level write errors (caught and turned into evictions by the
dispatcher) and caller-input errors raised by the HTTP layer.
"""

from enum import Enum
from typing import Any

from fastapi import status


class ErrorCode(str, Enum):
    """Machine-readable error codes returned in error responses."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    CLIENT_ID_REQUIRED = "SSE_CLIENT_ID_REQUIRED"
    SINK_CLOSED = "SSE_SINK_CLOSED"
    SINK_FULL = "SSE_SINK_FULL"
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class SSEServiceError(Exception):
    """Base exception class for all SSE service exceptions"""

    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        if error_code is not None:
            self.error_code = error_code
        super().__init__(self.message)


# ============================================================================
# Request Exceptions
# ============================================================================


class ClientIdRequiredError(SSEServiceError):
    """Raised when a non-broadcast notification has no target client"""

    error_code = ErrorCode.CLIENT_ID_REQUIRED

    def __init__(self, message: str = "client_id required unless broadcast=true"):
        super().__init__(message=message, status_code=status.HTTP_400_BAD_REQUEST, details={"field": "client_id"})


# ============================================================================
# Sink Exceptions
# ============================================================================


class SinkError(SSEServiceError):
    """Raised by an event sink when a frame cannot be written"""

    def __init__(self, message: str, client_id: str | None = None):
        details = {"client_id": client_id} if client_id else {}
        super().__init__(message=message, status_code=status.HTTP_503_SERVICE_UNAVAILABLE, details=details)


class SinkClosedError(SinkError):
    """Raised when writing to a sink that has already been closed"""

    error_code = ErrorCode.SINK_CLOSED

    def __init__(self, client_id: str | None = None):
        super().__init__(message="Event sink is closed", client_id=client_id)


class SinkFullError(SinkError):
    """Raised when a sink's buffer is full because its consumer stopped reading"""

    error_code = ErrorCode.SINK_FULL

    def __init__(self, client_id: str | None = None):
        super().__init__(message="Event sink buffer is full", client_id=client_id)
