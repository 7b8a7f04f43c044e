"""
Shared error types for gox.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class GoxError(Exception):
    """Base exception for gox components."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(GoxError):
    """Invalid option, log level or environment configuration."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class ServerStartError(GoxError):
    """The HTTP server could not bind or stopped before it was asked to."""

    def __init__(self, message: str = "HTTP server failed to start", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVER_START_ERROR", message, details)


class ShutdownTimeoutError(GoxError):
    """In-flight requests did not drain within the grace period."""

    def __init__(self, grace_period: float, details: Optional[Dict[str, Any]] = None):
        self.grace_period = grace_period
        super().__init__(
            "SHUTDOWN_TIMEOUT_ERROR",
            f"http server shutdown did not complete within {grace_period}s",
            details
        )


class RequestDecodeError(GoxError):
    """A request body could not be decoded into the requested type."""

    def __init__(self, message: str, status_code: int = 400, details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        super().__init__("DECODE_ERROR", message, details)


class NoRowsError(GoxError):
    """A query expected to return a row returned nothing."""

    def __init__(self, message: str = "no rows in result set", details: Optional[Dict[str, Any]] = None):
        super().__init__("NO_ROWS_ERROR", message, details)


class KeySetError(GoxError):
    """A JWKS document could not be fetched or understood."""

    def __init__(self, message: str = "invalid JWKS document", details: Optional[Dict[str, Any]] = None):
        super().__init__("KEY_SET_ERROR", message, details)
