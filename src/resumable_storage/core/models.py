"""
Pydantic models for Resumable Storage.

These models validate the upload configuration, per-upload options and the
payloads exchanged with the upload service.
"""

import os
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import ConfigurationError

KB = 1024
MB = 1024 * KB

# Block size is fixed by the service: one mkblk call creates at most 4 MiB.
BLOCK_SIZE = 4 * MB
CHUNK_SIZE = 256 * KB
RETRY_MAX = 5

UP_HOST = "upload.qiniu.com"
UP_HOST_BACKUP = "up.qiniu.com"

DEFAULT_MIME_TYPE = "application/octet-stream"


class UploadConfig(BaseModel):
    """Upload endpoint, segmentation and retry configuration."""

    model_config = ConfigDict(frozen=True)

    up_host: str = Field(UP_HOST, description="Primary upload host")
    up_host_backup: str = Field(
        UP_HOST_BACKUP, description="Host used after network or server failures"
    )
    block_size: int = Field(BLOCK_SIZE, gt=0, le=BLOCK_SIZE, description="Block size in bytes")
    chunk_size: int = Field(CHUNK_SIZE, gt=0, description="Chunk size in bytes")
    retry_max: int = Field(RETRY_MAX, ge=0, description="Retries per offset before failing")
    connect_timeout: float = Field(10, gt=0, description="Connect timeout in seconds")
    response_timeout: float = Field(60, gt=0, description="Read timeout in seconds")
    idle_timeout: float = Field(
        180, gt=0, description="Seconds before an idle HTTP session is recycled"
    )

    @model_validator(mode="after")
    def validate_chunk_fits_block(self) -> "UploadConfig":
        """Chunks must tile a block exactly so no chunk crosses a block boundary."""
        if self.chunk_size > self.block_size or self.block_size % self.chunk_size:
            raise ValueError(
                f"chunk_size ({self.chunk_size}) must divide block_size ({self.block_size})"
            )
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "UploadConfig":
        """Build a config from RESUMABLE_STORAGE_* environment variables.

        Explicit keyword overrides win over the environment.
        """
        values: Dict[str, Any] = {}
        env_map = {
            "up_host": "RESUMABLE_STORAGE_UP_HOST",
            "up_host_backup": "RESUMABLE_STORAGE_UP_HOST_BACKUP",
            "chunk_size": "RESUMABLE_STORAGE_CHUNK_SIZE",
            "retry_max": "RESUMABLE_STORAGE_RETRY_MAX",
        }
        for field, env_var in env_map.items():
            value = os.getenv(env_var)
            if value:
                values[field] = value
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValueError as e:
            raise ConfigurationError(f"Invalid upload configuration: {e}") from e


class UploadOptions(BaseModel):
    """Optional per-upload parameters."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    params: Dict[str, str] = Field(
        default_factory=dict,
        description="Custom variables; only names starting with 'x:' are sent",
    )
    mime_type: str = Field(DEFAULT_MIME_TYPE, description="MIME type of the stored object")
    progress_handler: Optional[Callable[[Optional[str], float], None]] = Field(
        None, description="Called with (key, percent)"
    )
    cancellation_signal: Optional[Callable[[], bool]] = Field(
        None, description="Polled between steps; True cancels the upload"
    )

    @field_validator("params")
    def filter_params(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Drop anything the service would reject as a custom variable."""
        return {k: val for k, val in v.items() if k.startswith("x:") and val}

    @field_validator("mime_type")
    def default_mime_type(cls, v: str) -> str:
        v = v.strip()
        return v or DEFAULT_MIME_TYPE

    def is_cancelled(self) -> bool:
        return bool(self.cancellation_signal and self.cancellation_signal())

    def report_progress(self, key: Optional[str], percent: float) -> None:
        if self.progress_handler:
            self.progress_handler(key, percent)


class ChunkAck(BaseModel):
    """Body returned by mkblk and bput."""

    ctx: str = Field(..., description="Context token for the block")
    crc32: int = Field(..., description="CRC-32 the server computed over the chunk")
    offset: Optional[int] = Field(None, description="Next offset within the block")
    host: Optional[str] = Field(None, description="Host that holds the block")


class UploadResult(BaseModel):
    """Outcome of a completed blocking upload."""

    key: Optional[str] = Field(None, description="Stored object key", json_schema_extra={"example": "video.mp4"})
    hash: Optional[str] = Field(None, description="Object hash returned by the service")
    size: int = Field(..., description="Uploaded file size in bytes", json_schema_extra={"example": 10485760})
    upload_time: float = Field(..., description="Upload time in seconds", json_schema_extra={"example": 12.34})
    speed_mbps: float = Field(..., description="Upload speed in MB/s", json_schema_extra={"example": 4.2})
    response: Dict[str, Any] = Field(default_factory=dict, description="Raw mkfile body")
