"""Programmatic API for resumable uploads."""

import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .checkpoint import Checkpoint, decode
from .exceptions import (
    AuthenticationError,
    UploadCancelledError,
    UploadError,
)
from .manager import UploadManager
from .models import UploadConfig, UploadOptions, UploadResult
from .recorder import FileRecorder, Recorder, default_recorder_key
from .transport import ResponseInfo, Transport

logger = logging.getLogger(__name__)

DEFAULT_RECORD_DIR = Path.home() / ".resumable-storage" / "records"


class ResumableStorageAPI:
    """High-level, blocking API for resumable uploads."""

    def __init__(
        self,
        token: Optional[str] = None,
        config: Optional[UploadConfig] = None,
        record_dir: Optional[Union[str, Path]] = None,
        recorder: Optional[Recorder] = None,
        transport: Optional[Transport] = None,
        enable_resume: bool = True,
    ):
        """Initialize the API.

        Args:
            token: Upload token (or from RESUMABLE_STORAGE_UPTOKEN env var)
            config: Upload configuration (defaults to UploadConfig.from_env())
            record_dir: Directory for resume checkpoints
            recorder: Checkpoint store, overrides ``record_dir``
            transport: HTTP transport override
            enable_resume: Whether to persist and reuse checkpoints
        """
        self.token = token or os.getenv("RESUMABLE_STORAGE_UPTOKEN")
        if not self.token:
            raise AuthenticationError(
                "Upload token required. Set RESUMABLE_STORAGE_UPTOKEN environment "
                "variable or pass token parameter."
            )
        self.config = config or UploadConfig.from_env()
        if enable_resume and recorder is None:
            recorder = FileRecorder(record_dir or DEFAULT_RECORD_DIR)
        self.recorder = recorder if enable_resume else None
        self.manager = UploadManager(
            recorder=self.recorder, transport=transport, config=self.config
        )

    def upload_file(
        self,
        local_path: Union[str, Path],
        key: Optional[str] = None,
        mime_type: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        progress_callback: Optional[Callable[[Optional[str], float], None]] = None,
        cancellation_signal: Optional[Callable[[], bool]] = None,
    ) -> UploadResult:
        """Upload a file and wait for the result.

        Args:
            local_path: Local file path
            key: Destination key (default: let the service choose)
            mime_type: MIME type of the stored object
            params: Custom ``x:`` variables forwarded to mkfile
            progress_callback: Called with (key, percent)
            cancellation_signal: Returns True to cancel the upload

        Returns:
            Upload result with the mkfile response

        Raises:
            FileNotFoundError: If the local file does not exist
            UploadCancelledError: If the upload was cancelled
            AuthenticationError: If the service rejected the token
            UploadError: For any other terminal failure
        """
        local_path = Path(local_path)
        if not local_path.exists():
            raise FileNotFoundError(f"Local file not found: {local_path}")
        if local_path.is_dir():
            raise ValueError(f"Path is a directory: {local_path}")

        options_kwargs: Dict[str, Any] = {
            "params": params or {},
            "progress_handler": progress_callback,
            "cancellation_signal": cancellation_signal,
        }
        if mime_type:
            options_kwargs["mime_type"] = mime_type
        options = UploadOptions(**options_kwargs)

        outcome: List[Any] = []

        def on_complete(
            done_key: Optional[str], info: ResponseInfo, body: Optional[Dict[str, Any]]
        ) -> None:
            outcome.append((done_key, info, body))

        start_time = time.time()
        self.manager.upload(local_path, key, self.token, on_complete, options)
        elapsed = time.time() - start_time

        done_key, info, body = outcome[0]
        if info.is_ok:
            body = body or {}
            size = local_path.stat().st_size
            speed = (size / (1024 * 1024)) / elapsed if elapsed > 0 else 0.0
            logger.info(f"Uploaded {local_path} as {body.get('key', done_key)} at {speed:.2f} MB/s")
            return UploadResult(
                key=body.get("key", done_key),
                hash=body.get("hash"),
                size=size,
                upload_time=elapsed,
                speed_mbps=speed,
                response=body,
            )
        if info.is_cancelled:
            raise UploadCancelledError(str(local_path))
        if info.status_code == 401:
            raise AuthenticationError(f"Upload token rejected: {info.error}")
        raise UploadError(
            f"Upload failed: {info.error or f'HTTP {info.status_code}'}",
            file_path=str(local_path),
            status_code=info.status_code,
            req_id=info.req_id,
        )

    # Checkpoint helpers
    def get_checkpoint(
        self, local_path: Union[str, Path], key: Optional[str] = None
    ) -> Optional[Checkpoint]:
        """Return the stored checkpoint for a pending upload, if any."""
        if self.recorder is None:
            return None
        return decode(self.recorder.get(default_recorder_key(key, local_path)))

    def clear_checkpoint(self, local_path: Union[str, Path], key: Optional[str] = None) -> bool:
        """Delete the stored checkpoint; returns True if one existed."""
        if self.recorder is None:
            return False
        recorder_key = default_recorder_key(key, local_path)
        existed = self.recorder.get(recorder_key) is not None
        self.recorder.delete(recorder_key)
        return existed

    def close(self) -> None:
        self.manager.shutdown()

    def __enter__(self) -> "ResumableStorageAPI":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# Convenience functions for quick usage
def upload_file(
    local_path: Union[str, Path],
    key: Optional[str] = None,
    token: Optional[str] = None,
    mime_type: Optional[str] = None,
    record_dir: Optional[Union[str, Path]] = None,
) -> UploadResult:
    """Quick function to upload a file."""
    with ResumableStorageAPI(token, record_dir=record_dir) as api:
        return api.upload_file(local_path, key, mime_type=mime_type)
