"""Upload manager: runs resumable upload sessions for files on disk."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional, Union

from .models import UploadConfig, UploadOptions
from .recorder import Recorder, default_recorder_key
from .transport import HttpTransport, ResponseInfo, Transport
from .uploader import CompletionHandler, ResumeUploader

logger = logging.getLogger(__name__)

KeyGenerator = Callable[[Optional[str], Path], str]


class UploadManager:
    """Start resumable uploads of local files.

    Each call gets its own file handle, scratch buffer and checkpoint key, so
    any number of files can be uploaded concurrently through ``put_file``.
    """

    def __init__(
        self,
        recorder: Optional[Recorder] = None,
        transport: Optional[Transport] = None,
        config: Optional[UploadConfig] = None,
        key_generator: KeyGenerator = default_recorder_key,
        max_workers: int = 4,
    ) -> None:
        """Initialize the manager.

        Args:
            recorder: Checkpoint store; None disables resuming
            transport: HTTP transport (defaults to a requests-based one)
            config: Hosts, sizes and retry budget
            key_generator: Derives a checkpoint key from (key, path)
            max_workers: Concurrent uploads for ``put_file``
        """
        self.config = config or UploadConfig()
        self.recorder = recorder
        self._own_transport = transport is None
        self.transport = transport or HttpTransport.from_config(self.config)
        self.key_generator = key_generator
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="resumable-upload"
        )

    def put_file(
        self,
        file_path: Union[str, Path],
        key: Optional[str],
        token: str,
        complete: CompletionHandler,
        options: Optional[UploadOptions] = None,
    ) -> Future:
        """Upload a file on the manager's thread pool."""
        return self._executor.submit(self.upload, file_path, key, token, complete, options)

    def upload(
        self,
        file_path: Union[str, Path],
        key: Optional[str],
        token: str,
        complete: CompletionHandler,
        options: Optional[UploadOptions] = None,
    ) -> None:
        """Upload a file on the calling thread; ``complete`` is called exactly once."""
        if not token:
            complete(key, ResponseInfo.invalid_argument("no upload token"), None)
            return

        path = Path(file_path)
        try:
            stat = path.stat()
            file = open(path, "rb")
        except OSError as e:
            logger.error(f"Cannot open {path}: {e}")
            complete(key, ResponseInfo.file_error(e), None)
            return

        with file:
            if stat.st_size == 0:
                complete(key, ResponseInfo.invalid_argument("file or data size is zero"), None)
                return
            recorder_key = self.key_generator(key, path) if self.recorder is not None else None
            uploader = ResumeUploader(
                transport=self.transport,
                recorder=self.recorder,
                file=file,
                size=stat.st_size,
                modify_time=int(stat.st_mtime * 1000),
                key=key,
                token=token,
                complete=complete,
                options=options,
                recorder_key=recorder_key,
                config=self.config,
            )
            logger.info(f"Uploading {path} ({stat.st_size} bytes) as {key}")
            uploader.run()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        if self._own_transport:
            self.transport.close()

    def __enter__(self) -> "UploadManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
