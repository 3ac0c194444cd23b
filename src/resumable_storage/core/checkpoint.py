"""
Resume checkpoint encoding.

A checkpoint is persisted after every acknowledged chunk:

    {"size": 10485760, "offset": 2097152, "modify_time": 1700000000000,
     "contexts": ["ctx-of-block-0", null, null]}

``null`` marks blocks that have no acknowledged chunk yet.
"""

import json
import logging
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

logger = logging.getLogger(__name__)


class Checkpoint(BaseModel):
    """Persisted progress of one resumable upload."""

    model_config = ConfigDict(frozen=True)

    size: StrictInt = Field(..., ge=0, description="Source file size in bytes")
    offset: StrictInt = Field(..., ge=0, description="Next byte to upload")
    modify_time: StrictInt = Field(..., description="Source file mtime in epoch millis")
    contexts: List[Optional[str]] = Field(..., description="One context token per block")

    def matches(self, size: int, modify_time: int) -> bool:
        """Return True if this checkpoint was written for the same file state."""
        return self.size == size and self.modify_time == modify_time

    def is_resumable(self, size: int, modify_time: int, block_count: int) -> bool:
        """Return True if an upload of this file may resume from this checkpoint."""
        if self.offset == 0 or self.offset > size:
            return False
        if not self.matches(size, modify_time):
            return False
        return 0 < len(self.contexts) <= block_count


def encode(checkpoint: Checkpoint) -> bytes:
    """Serialize a checkpoint to the recorder's byte format."""
    payload = {
        "size": checkpoint.size,
        "offset": checkpoint.offset,
        "modify_time": checkpoint.modify_time,
        "contexts": list(checkpoint.contexts),
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def decode(data: Optional[bytes]) -> Optional[Checkpoint]:
    """Parse recorder bytes into a checkpoint.

    Recovery is best effort: anything unreadable yields None instead of raising.
    """
    if not data:
        return None
    try:
        obj = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        logger.warning(f"Discarding unreadable checkpoint: {e}")
        return None
    if not isinstance(obj, dict):
        logger.warning("Discarding checkpoint that is not a JSON object")
        return None
    try:
        return Checkpoint.model_validate(obj)
    except ValidationError as e:
        logger.warning(f"Discarding malformed checkpoint: {e.error_count()} invalid fields")
        return None
