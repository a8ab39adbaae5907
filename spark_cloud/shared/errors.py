"""
Shared error handling for the Spark Cloud SDK.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error payload format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class SparkCloudException(Exception):
    """Base exception for the Spark Cloud SDK."""

    # Terminal errors end the event flow of the connection that raised them.
    is_terminal: bool = False

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


class TransportError(SparkCloudException):
    """Network-level failures. Retried by stream connections until exhausted."""

    def __init__(
        self,
        message: str = "Transport error",
        details: Optional[Dict[str, Any]] = None,
        terminal: bool = False
    ):
        super().__init__("TRANSPORT_ERROR", message, details)
        self.is_terminal = terminal


class ProtocolParseError(SparkCloudException):
    """A single malformed stream frame."""

    def __init__(
        self,
        message: str = "Malformed event frame",
        event_name: Optional[str] = None,
        device_id: Optional[str] = None,
        raw: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if event_name is not None:
            details.setdefault("event", event_name)
        if device_id is not None:
            details.setdefault("coreid", device_id)
        super().__init__("PROTOCOL_PARSE_ERROR", message, details)
        self.event_name = event_name
        self.device_id = device_id
        self.raw = raw


class AuthenticationError(SparkCloudException):
    """Authentication-related errors."""

    is_terminal = True

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class PreconditionError(SparkCloudException):
    """Caller-side precondition failures, rejected before any request is sent."""

    def __init__(self, message: str = "Precondition failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("PRECONDITION_ERROR", message, details)


class NotFoundError(SparkCloudException):
    """Unknown device or resource."""

    is_terminal = True

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ServiceError(SparkCloudException):
    """Unexpected responses from the cloud."""

    def __init__(
        self,
        message: str = "Service error",
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if status_code is not None:
            details.setdefault("status_code", status_code)
        super().__init__("SERVICE_ERROR", message, details)
        self.status_code = status_code


def error_for_status(status_code: int, body: str = "", context: str = "request") -> SparkCloudException:
    """Map an HTTP status code from the cloud to an SDK exception."""
    details = {"status_code": status_code}
    if body:
        details["body"] = body[:500]

    if status_code in (401, 403):
        return AuthenticationError(f"{context} rejected: access token invalid or missing", details)
    if status_code == 404:
        return NotFoundError(f"{context}: resource not found", details)
    return ServiceError(f"{context} failed with status {status_code}", status_code, details)
