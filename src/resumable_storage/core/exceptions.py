"""
Exception classes for Resumable Storage.

The upload engine reports failures as ``ResponseInfo`` values; these exceptions
are raised by the blocking API and the CLI built on top of it.
"""

from typing import Any, Dict, Optional


class ResumableStorageError(Exception):
    """Base exception for all Resumable Storage errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class AuthenticationError(ResumableStorageError):
    """Raised when the upload token is missing or rejected."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message)


class ValidationError(ResumableStorageError):
    """Raised for input validation errors."""

    def __init__(self, field: str, value: Any, message: str) -> None:
        details = {"field": field, "value": value}
        super().__init__(f"Validation error for {field}: {message}", details)
        self.field = field
        self.value = value


class ConfigurationError(ResumableStorageError):
    """Raised for configuration-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class FileReadError(ResumableStorageError):
    """Raised when the source file cannot be read at the requested range."""

    def __init__(self, message: str, offset: Optional[int] = None) -> None:
        details = {"offset": offset} if offset is not None else {}
        super().__init__(message, details)
        self.offset = offset


class UploadError(ResumableStorageError):
    """Raised when an upload ends in a terminal failure."""

    def __init__(
        self,
        message: str,
        file_path: Optional[str] = None,
        status_code: Optional[int] = None,
        req_id: Optional[str] = None,
    ) -> None:
        details: Dict[str, Any] = {}
        if file_path:
            details["file_path"] = file_path
        if status_code is not None:
            details["status_code"] = status_code
        if req_id:
            details["req_id"] = req_id
        super().__init__(message, details)
        self.file_path = file_path
        self.status_code = status_code
        self.req_id = req_id


class UploadCancelledError(UploadError):
    """Raised when an upload was cancelled through its cancellation signal."""

    def __init__(self, file_path: Optional[str] = None) -> None:
        super().__init__("Upload cancelled", file_path=file_path)
