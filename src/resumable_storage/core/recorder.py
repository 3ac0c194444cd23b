"""Progress recorders: durable key -> bytes stores for resume checkpoints."""

import hashlib
import logging
import os
import time
from pathlib import Path
from threading import Lock
from typing import Dict, Optional, Protocol, Union

logger = logging.getLogger(__name__)

# Records older than this are assumed to point at server-side contexts that
# have already expired.
DEFAULT_MAX_AGE = 2 * 24 * 60 * 60


class Recorder(Protocol):
    """Storage contract used by the upload engine to persist checkpoints."""

    def get(self, key: str) -> Optional[bytes]: ...

    def set(self, key: str, data: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryRecorder:
    """Recorder kept in process memory. Useful for tests and short-lived retries."""

    def __init__(self) -> None:
        self._records: Dict[str, bytes] = {}
        self._lock = Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._records.get(key)

    def set(self, key: str, data: bytes) -> None:
        with self._lock:
            self._records[key] = bytes(data)

    def delete(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._records


class FileRecorder:
    """Recorder that keeps one file per key inside a directory."""

    def __init__(
        self, directory: Union[str, Path], max_age: float = DEFAULT_MAX_AGE
    ) -> None:
        """Initialize the recorder.

        Args:
            directory: Directory for record files (created if missing)
            max_age: Seconds after which a record is discarded on read
        """
        self.directory = Path(directory)
        if self.directory.exists() and not self.directory.is_dir():
            raise NotADirectoryError(f"Record path is not a directory: {self.directory}")
        self.directory.mkdir(parents=True, exist_ok=True)
        self.max_age = max_age

    def path_for(self, key: str) -> Path:
        """Return the record file backing ``key``."""
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
        return self.directory / digest

    def get(self, key: str) -> Optional[bytes]:
        path = self.path_for(key)
        try:
            if time.time() - path.stat().st_mtime > self.max_age:
                logger.info(f"Dropping expired upload record {path.name}")
                self._remove(path)
                return None
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def set(self, key: str, data: bytes) -> None:
        path = self.path_for(key)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
        logger.debug(f"Wrote upload record {path.name} ({len(data)} bytes)")

    def delete(self, key: str) -> None:
        self._remove(self.path_for(key))

    @staticmethod
    def _remove(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def default_recorder_key(key: Optional[str], file_path: Union[str, Path]) -> str:
    """Derive a recorder key from the destination key and the source file.

    The file size is part of the key so a file rewritten with a different
    length never picks up an older record.
    """
    path = Path(file_path).resolve()
    return f"{key or ''}|{path}|{path.stat().st_size}"
