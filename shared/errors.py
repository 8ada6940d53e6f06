"""
Shared error handling for the Credential Broker.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class BrokerException(Exception):
    """Base exception for broker services."""

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


class ConfigurationError(BrokerException):
    """Missing or unusable authority/credential configuration."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class TokenAcquisitionError(BrokerException):
    """The authority rejected the exchange or was unreachable after the retry budget.

    ``body`` carries the last response body seen from the authority so the
    boundary can surface it for diagnostics.
    """

    def __init__(self, message: str = "Token acquisition failed",
                 status: Optional[int] = None, body: str = "",
                 attempts: int = 0):
        self.status = status
        self.body = body
        self.attempts = attempts
        super().__init__(
            "TOKEN_ACQUISITION_ERROR",
            message,
            {"status": status, "body": body, "attempts": attempts}
        )


class DownstreamError(BrokerException):
    """The authorization query failed after the single re-authentication retry.

    ``status`` is ``None`` when no HTTP response was received at all.
    """

    def __init__(self, status: Optional[int], body: str = "", message: Optional[str] = None):
        self.status = status
        self.body = body
        if message is None:
            message = f"Downstream error: {status}" if status is not None else "Downstream unavailable"
        super().__init__("DOWNSTREAM_ERROR", message, {"status": status, "body": body})
