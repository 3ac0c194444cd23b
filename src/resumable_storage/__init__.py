"""
Resumable Storage - resumable, chunked uploads to block-based object storage.

This package provides:
- A resumable upload engine (mkblk / bput / mkfile) with checkpoint recovery
- File and in-memory progress recorders
- A blocking Python API and a CLI tool
"""

__version__ = "1.0.0"
__author__ = "Resumable Storage Team"

from .core.api import ResumableStorageAPI, upload_file
from .core.checkpoint import Checkpoint
from .core.exceptions import (
    AuthenticationError,
    ConfigurationError,
    FileReadError,
    ResumableStorageError,
    UploadCancelledError,
    UploadError,
    ValidationError,
)
from .core.manager import UploadManager
from .core.models import UploadConfig, UploadOptions, UploadResult
from .core.recorder import FileRecorder, MemoryRecorder, Recorder
from .core.transport import HttpTransport, ResponseInfo, Transport
from .core.uploader import ResumeUploader, UploadPhase

__all__ = [
    # Core classes
    "ResumableStorageAPI",
    "UploadManager",
    "ResumeUploader",
    "UploadPhase",
    "HttpTransport",
    "Transport",
    "ResponseInfo",
    "Recorder",
    "FileRecorder",
    "MemoryRecorder",
    "Checkpoint",
    # Models
    "UploadConfig",
    "UploadOptions",
    "UploadResult",
    # Exceptions
    "ResumableStorageError",
    "AuthenticationError",
    "ConfigurationError",
    "FileReadError",
    "UploadError",
    "UploadCancelledError",
    "ValidationError",
    # Convenience functions
    "upload_file",
    # Metadata
    "__version__",
    "__author__",
]
