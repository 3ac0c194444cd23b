"""
Resumable block/chunk uploader.

A file is split into blocks of ``block_size`` bytes and every block into chunks
of ``chunk_size`` bytes. The first chunk of a block is sent with ``mkblk``,
which creates the block; the following chunks are appended with ``bput``
against the block's context token. Once every block is uploaded, ``mkfile``
stitches the block contexts into the final object.

A checkpoint is written after every acknowledged chunk so an interrupted upload
resumes from the last acknowledged offset instead of byte zero.
"""

import base64
import logging
import queue
from dataclasses import dataclass
from enum import Enum
from typing import Any, BinaryIO, Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from .checkpoint import Checkpoint, decode, encode
from .crc32 import crc32
from .exceptions import FileReadError
from .models import ChunkAck, UploadConfig, UploadOptions
from .recorder import Recorder
from .transport import ProgressCallback, ResponseInfo, Transport

logger = logging.getLogger(__name__)

CompletionHandler = Callable[[Optional[str], ResponseInfo, Optional[Dict[str, Any]]], None]

# Progress stays below this until mkfile succeeds.
MAX_CHUNK_PROGRESS = 0.95


class UploadPhase(str, Enum):
    """Phases of one upload session."""

    IDLE = "idle"
    RECOVERING = "recovering"
    MAKE_BLOCK = "make_block"
    PUT_CHUNK = "put_chunk"
    MAKE_FILE = "make_file"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadPhase.DONE, UploadPhase.CANCELLED, UploadPhase.FAILED)


class OutcomeKind(str, Enum):
    """How a chunk response moves the session forward."""

    OK = "ok"
    EXPIRED = "expired"  # block context gone, recreate the block
    RETRY = "retry"  # transport or server failure worth repeating
    CORRUPT = "corrupt"  # 200 with a missing, malformed or mismatching body
    FATAL = "fatal"


@dataclass(frozen=True)
class ChunkOutcome:
    kind: OutcomeKind
    context: Optional[str] = None
    reason: Optional[str] = None


def classify_chunk_response(
    info: ResponseInfo, body: Optional[Dict[str, Any]], expected_crc: int
) -> ChunkOutcome:
    """Classify the response to a mkblk or bput request."""
    if not info.is_ok:
        if info.is_context_expired:
            return ChunkOutcome(OutcomeKind.EXPIRED)
        if info.needs_retry():
            return ChunkOutcome(OutcomeKind.RETRY)
        return ChunkOutcome(OutcomeKind.FATAL)
    if body is None:
        return ChunkOutcome(OutcomeKind.CORRUPT, reason="empty response body")
    try:
        ack = ChunkAck.model_validate(body)
    except ValidationError:
        return ChunkOutcome(OutcomeKind.CORRUPT, reason="malformed response body")
    if ack.crc32 != expected_crc:
        return ChunkOutcome(
            OutcomeKind.CORRUPT,
            reason=f"crc32 mismatch: sent {expected_crc}, server saw {ack.crc32}",
        )
    return ChunkOutcome(OutcomeKind.OK, context=ack.ctx)


def block_count(size: int, block_size: int) -> int:
    return (size + block_size - 1) // block_size


def iter_blocks(size: int, block_size: int) -> Iterator[Tuple[int, int]]:
    """Yield ``(offset, length)`` for every block of a file of ``size`` bytes."""
    for offset in range(0, size, block_size):
        yield offset, min(block_size, size - offset)


def iter_chunks(size: int, block_size: int, chunk_size: int) -> Iterator[Tuple[int, int]]:
    """Yield ``(offset, length)`` for every chunk, block by block."""
    for block_offset, block_length in iter_blocks(size, block_size):
        block_end = block_offset + block_length
        for offset in range(block_offset, block_end, chunk_size):
            yield offset, min(chunk_size, block_end - offset)


def urlsafe_b64(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii")


@dataclass(frozen=True)
class _Cursor:
    offset: int
    retried: int
    host: str


@dataclass(frozen=True)
class _Request:
    phase: UploadPhase
    url: str
    body: Any
    length: int
    crc: int = 0


class ResumeUploader:
    """Upload one file with mkblk/bput/mkfile, resuming from a checkpoint.

    The session is strictly sequential: one request is in flight at a time and
    the next one is only built after the previous one completed. ``run()``
    blocks until the session reaches a terminal phase and invokes ``complete``
    exactly once with ``(key, info, body)``.
    """

    def __init__(
        self,
        transport: Transport,
        recorder: Optional[Recorder],
        file: BinaryIO,
        size: int,
        modify_time: int,
        key: Optional[str],
        token: str,
        complete: CompletionHandler,
        options: Optional[UploadOptions] = None,
        recorder_key: Optional[str] = None,
        config: Optional[UploadConfig] = None,
    ) -> None:
        """Initialize the uploader.

        Args:
            transport: Performs the HTTP POSTs
            recorder: Checkpoint store, or None to disable resuming
            file: Binary file object opened for reading; owned by the caller
            size: Total file size in bytes
            modify_time: File mtime in epoch milliseconds
            key: Destination object key, None to let the service choose
            token: Upload token
            complete: Called once with (key, info, body) when the session ends
            options: Mime type, custom variables, progress and cancellation hooks
            recorder_key: Key of this session's checkpoint in ``recorder``
            config: Hosts, block/chunk sizes and retry budget
        """
        if size < 0:
            raise ValueError(f"size must be non-negative, got {size}")
        self.config = config or UploadConfig()
        self.transport = transport
        self.recorder = recorder
        self.file = file
        self.size = size
        self.modify_time = modify_time
        self.key = key
        self.complete_handler = complete
        self.options = options or UploadOptions()
        self.recorder_key = recorder_key
        self.headers = {"Authorization": f"UpToken {token}"}

        self.contexts: List[Optional[str]] = [None] * block_count(size, self.config.block_size)
        self.phase = UploadPhase.IDLE
        self.requests_sent = 0

        self._buffer = bytearray(min(self.config.chunk_size, size))
        self._last_percent = 0.0
        self._finished = False

    # Segmentation

    def chunk_size_at(self, offset: int) -> int:
        # Never crosses the block end, even from an offset recorded with another chunk size.
        block_start = self.block_index(offset) * self.config.block_size
        block_end = block_start + self.block_size_at(block_start)
        return min(self.config.chunk_size, block_end - offset)

    def block_size_at(self, offset: int) -> int:
        return min(self.config.block_size, self.size - offset)

    def block_index(self, offset: int) -> int:
        return offset // self.config.block_size

    # Recovery

    def recover(self) -> int:
        """Restore contexts from the checkpoint and return the offset to start at."""
        self.phase = UploadPhase.RECOVERING
        if self.recorder is None or self.recorder_key is None:
            return 0
        try:
            data = self.recorder.get(self.recorder_key)
        except OSError as e:
            logger.warning(f"Failed to read checkpoint for {self.key}: {e}")
            return 0
        checkpoint = decode(data)
        if checkpoint is None:
            return 0
        if not checkpoint.is_resumable(self.size, self.modify_time, len(self.contexts)):
            logger.info(
                f"Ignoring stale checkpoint for {self.key}: recorded size={checkpoint.size} "
                f"modify_time={checkpoint.modify_time} offset={checkpoint.offset}"
            )
            return 0
        # Every block the offset has entered must have a context.
        needed = block_count(checkpoint.offset, self.config.block_size)
        if len(checkpoint.contexts) < needed or any(
            ctx is None for ctx in checkpoint.contexts[:needed]
        ):
            logger.info(f"Ignoring checkpoint for {self.key}: missing block contexts")
            return 0

        for index, ctx in enumerate(checkpoint.contexts):
            self.contexts[index] = ctx
        logger.info(
            f"Resuming upload of {self.key} at offset {checkpoint.offset}/{self.size}"
        )
        return checkpoint.offset

    def _record(self, offset: int) -> None:
        if self.recorder is None or self.recorder_key is None or offset == 0:
            return
        checkpoint = Checkpoint(
            size=self.size,
            offset=offset,
            modify_time=self.modify_time,
            contexts=list(self.contexts),
        )
        try:
            self.recorder.set(self.recorder_key, encode(checkpoint))
        except OSError as e:
            logger.warning(f"Failed to persist checkpoint at offset {offset}: {e}")

    def _remove_record(self) -> None:
        if self.recorder is not None and self.recorder_key is not None:
            try:
                self.recorder.delete(self.recorder_key)
            except OSError as e:
                logger.warning(f"Failed to remove checkpoint for {self.key}: {e}")

    # Driver

    def run(self) -> None:
        """Drive the session until it is done, cancelled or failed."""
        cursor: Optional[_Cursor] = _Cursor(self.recover(), 0, self.config.up_host)
        while cursor is not None:
            if self.options.is_cancelled():
                self._finish(UploadPhase.CANCELLED, ResponseInfo.cancelled(), None)
                return
            try:
                request = self.prepare(cursor)
            except FileReadError as e:
                logger.error(f"Upload of {self.key} aborted: {e}")
                self._finish(UploadPhase.FAILED, ResponseInfo.file_error(e), None)
                return
            info, body = self._send(request, cursor)
            if self.options.is_cancelled():
                self._finish(UploadPhase.CANCELLED, ResponseInfo.cancelled(), None)
                return
            cursor = self.step(cursor, request, info, body)

    def prepare(self, cursor: _Cursor) -> _Request:
        """Build the request for the cursor, reading the chunk into the scratch buffer."""
        offset = cursor.offset
        if offset == self.size:
            self.phase = UploadPhase.MAKE_FILE
            body = ",".join(self.contexts).encode("utf-8")
            return _Request(UploadPhase.MAKE_FILE, self._make_file_url(cursor.host), body, len(body))

        length = self.chunk_size_at(offset)
        chunk = self._read_chunk(offset, length)
        checksum = crc32(chunk)
        if offset % self.config.block_size == 0:
            self.phase = UploadPhase.MAKE_BLOCK
            url = f"http://{cursor.host}/mkblk/{self.block_size_at(offset)}"
        else:
            self.phase = UploadPhase.PUT_CHUNK
            context = self.contexts[self.block_index(offset)]
            url = f"http://{cursor.host}/bput/{context}/{offset % self.config.block_size}"
        return _Request(self.phase, url, chunk, length, checksum)

    def step(
        self,
        cursor: _Cursor,
        request: _Request,
        info: ResponseInfo,
        body: Optional[Dict[str, Any]],
    ) -> Optional[_Cursor]:
        """Apply a response to the session and return the next cursor.

        Returns None once the session reached a terminal phase.
        """
        if request.phase is UploadPhase.MAKE_FILE:
            return self._step_make_file(cursor, info, body)

        outcome = classify_chunk_response(info, body, request.crc)
        offset = cursor.offset

        if outcome.kind is OutcomeKind.EXPIRED:
            block_start = self.block_index(offset) * self.config.block_size
            if block_start == offset:
                # mkblk itself reported expiry; rolling back would not move.
                outcome = ChunkOutcome(OutcomeKind.RETRY)
        if outcome.kind is OutcomeKind.EXPIRED:
            logger.warning(
                f"Context of block {self.block_index(offset)} expired at offset {offset}; "
                f"recreating block from {block_start}"
            )
            return _Cursor(block_start, cursor.retried, cursor.host)

        if outcome.kind is OutcomeKind.FATAL:
            logger.error(f"Chunk at offset {offset} failed permanently: {info!r}")
            self._finish(UploadPhase.FAILED, info, body)
            return None

        if outcome.kind in (OutcomeKind.RETRY, OutcomeKind.CORRUPT):
            if outcome.kind is OutcomeKind.CORRUPT:
                info = ResponseInfo(
                    info.status_code,
                    req_id=info.req_id,
                    xlog=info.xlog,
                    host=info.host,
                    error=outcome.reason,
                    duration=info.duration,
                )
            if cursor.retried >= self.config.retry_max:
                logger.error(
                    f"Chunk at offset {offset} failed after {cursor.retried} retries: {info!r}"
                )
                self._finish(UploadPhase.FAILED, info, body)
                return None
            host = cursor.host
            if outcome.kind is OutcomeKind.RETRY and info.needs_host_switch():
                host = self.config.up_host_backup
            logger.warning(
                f"Retrying chunk at offset {offset} on {host} "
                f"(attempt {cursor.retried + 1}/{self.config.retry_max}): "
                f"{outcome.reason or info.error or info.status_code}"
            )
            return _Cursor(offset, cursor.retried + 1, host)

        self.contexts[self.block_index(offset)] = outcome.context
        next_offset = offset + request.length
        self._record(next_offset)
        logger.debug(f"Uploaded {next_offset}/{self.size} bytes of {self.key}")
        return _Cursor(next_offset, 0, cursor.host)

    def _step_make_file(
        self, cursor: _Cursor, info: ResponseInfo, body: Optional[Dict[str, Any]]
    ) -> Optional[_Cursor]:
        if info.is_ok:
            self._remove_record()
            self._last_percent = 1.0
            self.options.report_progress(self.key, 1.0)
            logger.info(f"Upload of {self.key} complete: {self.size} bytes")
            self._finish(UploadPhase.DONE, info, body)
            return None
        if info.needs_retry() and cursor.retried < self.config.retry_max:
            host = self.config.up_host_backup if info.needs_host_switch() else cursor.host
            logger.warning(
                f"Retrying mkfile on {host} "
                f"(attempt {cursor.retried + 1}/{self.config.retry_max}): {info!r}"
            )
            return _Cursor(cursor.offset, cursor.retried + 1, host)
        logger.error(f"mkfile for {self.key} failed: {info!r}")
        self._finish(UploadPhase.FAILED, info, body)
        return None

    # I/O helpers

    def _read_chunk(self, offset: int, length: int) -> memoryview:
        view = memoryview(self._buffer)[:length]
        try:
            self.file.seek(offset)
            read = self.file.readinto(view)
        except OSError as e:
            raise FileReadError(f"Failed to read {length} bytes at offset {offset}: {e}", offset) from e
        if read != length:
            raise FileReadError(
                f"Short read at offset {offset}: expected {length} bytes, got {read or 0}",
                offset,
            )
        return view

    def _make_file_url(self, host: str) -> str:
        url = f"http://{host}/mkfile/{self.size}/mimeType/{urlsafe_b64(self.options.mime_type)}"
        if self.key is not None:
            url += f"/key/{urlsafe_b64(self.key)}"
        for name, value in self.options.params.items():
            url += f"/{name}/{urlsafe_b64(value)}"
        return url

    def _send(
        self, request: _Request, cursor: _Cursor
    ) -> Tuple[ResponseInfo, Optional[Dict[str, Any]]]:
        """Post the request and wait for its completion continuation."""
        results: "queue.Queue[Tuple[ResponseInfo, Optional[Dict[str, Any]]]]" = queue.Queue(
            maxsize=1
        )
        if request.phase is UploadPhase.MAKE_FILE:
            headers = {**self.headers, "Content-Type": "text/plain"}
            progress: Optional[ProgressCallback] = None
        else:
            headers = {**self.headers, "Content-Type": "application/octet-stream"}
            progress = self._chunk_progress(cursor.offset)

        self.requests_sent += 1
        self.transport.post(
            request.url,
            request.body,
            headers,
            progress,
            lambda info, body: results.put((info, body)),
        )
        return results.get()

    def _chunk_progress(self, offset: int) -> ProgressCallback:
        def on_progress(bytes_written: int, total: int) -> None:
            self._report_progress((offset + bytes_written) / self.size)

        return on_progress

    def _report_progress(self, percent: float) -> None:
        percent = min(percent, MAX_CHUNK_PROGRESS)
        if percent <= self._last_percent:
            return
        self._last_percent = percent
        self.options.report_progress(self.key, percent)

    def _finish(
        self, phase: UploadPhase, info: ResponseInfo, body: Optional[Dict[str, Any]]
    ) -> None:
        if self._finished:
            return
        self._finished = True
        self.phase = phase
        self.complete_handler(self.key, info, body)
