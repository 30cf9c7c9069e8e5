"""Exception hierarchy for igdctl.

Every error raised inside the package derives from :class:`IGDCtlError` so
callers embedding the controller can catch one type at the boundary.
"""

from typing import Any, Dict, Optional


class IGDCtlError(Exception):
    """Base exception for all igdctl errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class NetworkError(IGDCtlError):
    """Network-related errors."""


class ValidationError(IGDCtlError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""
