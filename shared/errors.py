"""
Shared error handling for the Curve Data API.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ApiException(Exception):
    """Base exception for Curve Data API services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ParamError(ApiException):
    """Invalid request parameters."""

    def __init__(self, message: str = "Invalid parameters", details: Optional[Dict[str, Any]] = None):
        super().__init__("PARAM_ERROR", message, details)


class NotFoundError(ApiException):
    """Requested resource does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class UpstreamUnavailableError(ApiException):
    """
    A round-trip to an upstream destination failed.

    Raised for network errors, timeouts and malformed responses. Scoped to the
    batch group that made the round-trip.
    """

    status_code = 502

    def __init__(self, destination: str, message: str = "Upstream unavailable", details: Optional[Dict[str, Any]] = None):
        self.destination = destination
        super().__init__("UPSTREAM_UNAVAILABLE", f"{destination}: {message}", details)


class HardMissError(ApiException):
    """No servable cached value exists and computing one failed."""

    status_code = 503

    def __init__(self, key: str, message: str = "Value could not be computed", details: Optional[Dict[str, Any]] = None):
        self.key = key
        super().__init__("HARD_MISS", message, {"key": key, **(details or {})})


class PartialBatchFailure:
    """
    Marker attached to a single failed call inside a successful round-trip.

    Never raised: call results carry it in their ``error`` field.
    """

    __slots__ = ("reason", "return_data")

    def __init__(self, reason: str, return_data: bytes = b""):
        self.reason = reason
        self.return_data = return_data

    def __repr__(self) -> str:
        return f"PartialBatchFailure({self.reason!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PartialBatchFailure):
            return NotImplemented
        return self.reason == other.reason and self.return_data == other.return_data
