"""
Shared error handling for the URL Redirector service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RedirectorException(Exception):
    """Base exception for the redirector service."""

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


class ValidationError(RedirectorException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class StorageError(RedirectorException):
    """Persistent snapshot storage errors."""

    def __init__(self, message: str = "Storage error", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_ERROR", message, details)


class FeedDownloadError(RedirectorException):
    """Rule feed could not be fetched."""

    def __init__(self, url: str, message: str = "Feed download failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("FEED_DOWNLOAD_ERROR", f"{url}: {message}", {"url": url, **(details or {})})
        self.url = url


class FeedParseError(RedirectorException):
    """Rule feed was fetched but is not a usable document."""

    def __init__(self, url: str, message: str = "Feed parse failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("FEED_PARSE_ERROR", f"{url}: {message}", {"url": url, **(details or {})})
        self.url = url


class EnforcementError(RedirectorException):
    """Declarative rule set update was rejected."""

    def __init__(self, message: str = "Declarative rule update rejected", details: Optional[Dict[str, Any]] = None):
        super().__init__("ENFORCEMENT_ERROR", message, details)


# HTTP status for each error code; anything else is a client error
ERROR_STATUS_CODES = {
    "VALIDATION_ERROR": 422,
    "STORAGE_ERROR": 503,
    "FEED_DOWNLOAD_ERROR": 502,
    "FEED_PARSE_ERROR": 502,
    "ENFORCEMENT_ERROR": 409,
}


def status_code_for(exc: RedirectorException) -> int:
    return ERROR_STATUS_CODES.get(exc.code, 400)
