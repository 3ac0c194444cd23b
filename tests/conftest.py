"""Shared fixtures: an in-memory block storage service speaking mkblk/bput/mkfile."""

import base64
import random
import threading
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import pytest

from resumable_storage.core.models import UploadConfig, UploadOptions
from resumable_storage.core.recorder import MemoryRecorder
from resumable_storage.core.transport import ResponseInfo
from resumable_storage.core.uploader import ResumeUploader

KB = 1024
MB = 1024 * KB


def ok_info(host: str = "up.test", req_id: str = "req-ok") -> ResponseInfo:
    return ResponseInfo(200, req_id=req_id, host=host)


def error_info(status_code: int, host: str = "up.test") -> ResponseInfo:
    return ResponseInfo(status_code, req_id="req-err", host=host, error=f"HTTP {status_code}")


@dataclass
class Call:
    kind: str
    url: str
    host: str
    parts: List[str]
    body: bytes
    headers: Dict[str, str]


Override = Optional[Tuple[ResponseInfo, Optional[Dict[str, Any]]]]


class FakeBlockStorage:
    """Transport double that stores blocks in memory and records every request.

    ``hook(call, index)`` may return an ``(info, body)`` pair to replace the
    normal response for that request.
    """

    def __init__(self) -> None:
        self.calls: List[Call] = []
        self.blocks: Dict[str, bytes] = {}
        self.files: Dict[Optional[str], bytes] = {}
        self.hook: Optional[Callable[[Call, int], Override]] = None
        self._ctx_counter = 0
        self._lock = threading.Lock()

    @property
    def kinds(self) -> List[str]:
        return [call.kind for call in self.calls]

    def new_context(self, data: bytes) -> str:
        with self._lock:
            self._ctx_counter += 1
            ctx = f"ctx{self._ctx_counter}"
            self.blocks[ctx] = data
        return ctx

    def post(self, url, data, headers, progress, complete) -> None:
        parsed = urlparse(url)
        parts = parsed.path.strip("/").split("/")
        call = Call(parts[0], url, parsed.netloc, parts, bytes(data), dict(headers))
        self.calls.append(call)

        if self.hook is not None:
            override = self.hook(call, len(self.calls) - 1)
            if override is not None:
                complete(*override)
                return

        if progress is not None and call.body:
            half = len(call.body) // 2
            progress(half, len(call.body))
            progress(len(call.body), len(call.body))

        if call.kind == "mkblk":
            ctx = self.new_context(call.body)
            complete(ok_info(call.host), {"ctx": ctx, "crc32": zlib.crc32(call.body), "offset": len(call.body)})
        elif call.kind == "bput":
            old_ctx, offset = parts[1], int(parts[2])
            block = self.blocks.get(old_ctx)
            if block is None or len(block) != offset:
                complete(error_info(701, call.host), {"error": "context expired"})
                return
            ctx = self.new_context(block + call.body)
            complete(ok_info(call.host), {"ctx": ctx, "crc32": zlib.crc32(call.body), "offset": offset + len(call.body)})
        elif call.kind == "mkfile":
            contexts = call.body.decode().split(",") if call.body else []
            content = b"".join(self.blocks[ctx] for ctx in contexts)
            key = None
            if "key" in parts:
                key = base64.urlsafe_b64decode(parts[parts.index("key") + 1]).decode()
            self.files[key] = content
            complete(ok_info(call.host), {"key": key, "hash": f"hash-{zlib.crc32(content)}"})
        else:
            complete(error_info(404, call.host), None)


class Completion:
    """Collects completion callbacks."""

    def __init__(self) -> None:
        self.calls: List[Tuple[Optional[str], ResponseInfo, Optional[Dict[str, Any]]]] = []

    def __call__(self, key, info, body) -> None:
        self.calls.append((key, info, body))

    @property
    def info(self) -> ResponseInfo:
        assert len(self.calls) == 1
        return self.calls[0][1]

    @property
    def body(self) -> Optional[Dict[str, Any]]:
        assert len(self.calls) == 1
        return self.calls[0][2]


@pytest.fixture
def storage() -> FakeBlockStorage:
    return FakeBlockStorage()


@pytest.fixture
def recorder() -> MemoryRecorder:
    return MemoryRecorder()


@pytest.fixture
def small_config() -> UploadConfig:
    return UploadConfig(
        up_host="up.test",
        up_host_backup="backup.test",
        block_size=4 * KB,
        chunk_size=1 * KB,
        retry_max=3,
    )


@pytest.fixture
def make_uploader(tmp_path: Path, storage: FakeBlockStorage, recorder: MemoryRecorder, small_config):
    """Build a ResumeUploader over a temporary file holding ``data``."""
    opened = []

    def factory(
        data: bytes,
        config: Optional[UploadConfig] = None,
        options: Optional[UploadOptions] = None,
        key: Optional[str] = "object.bin",
        modify_time: int = 1_700_000_000_000,
        use_recorder: bool = True,
    ) -> Tuple[ResumeUploader, Completion]:
        path = tmp_path / "source.bin"
        path.write_bytes(data)
        file = open(path, "rb")
        opened.append(file)
        completion = Completion()
        uploader = ResumeUploader(
            transport=storage,
            recorder=recorder if use_recorder else None,
            file=file,
            size=len(data),
            modify_time=modify_time,
            key=key,
            token="test-token",
            complete=completion,
            options=options,
            recorder_key="record-key",
            config=config or small_config,
        )
        return uploader, completion

    yield factory
    for file in opened:
        file.close()


def pattern(size: int) -> bytes:
    """Deterministic pseudo-random test data."""
    return random.Random(size).randbytes(size)
