"""
HTTP transport for the upload service.

The upload engine never sees exceptions from the network layer: every request
ends in exactly one call to the completion continuation with a ``ResponseInfo``
describing what happened and the parsed JSON body, if any.
"""

import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, Optional, Protocol, Union
from urllib.parse import urlparse

import requests

from .. import __version__

logger = logging.getLogger(__name__)

Body = Union[bytes, bytearray, memoryview]
ProgressCallback = Callable[[int, int], None]
CompletionCallback = Callable[["ResponseInfo", Optional[Dict[str, Any]]], None]

USER_AGENT = f"resumable-storage/{__version__} python-requests/{requests.__version__}"


class ResponseInfo:
    """Status of one request, as seen by the upload engine."""

    INVALID_ARGUMENT = -4
    FILE_ERROR = -3
    CANCELLED = -2
    NETWORK_ERROR = -1
    TIMED_OUT = -1001
    UNKNOWN_HOST = -1003
    CANNOT_CONNECT_TO_HOST = -1004
    NETWORK_CONNECTION_LOST = -1005

    # Context of a block has expired on the server; the block must be recreated.
    CONTEXT_EXPIRED = 701

    def __init__(
        self,
        status_code: int,
        req_id: Optional[str] = None,
        xlog: Optional[str] = None,
        host: Optional[str] = None,
        error: Optional[str] = None,
        duration: float = 0.0,
    ) -> None:
        self.status_code = status_code
        self.req_id = req_id
        self.xlog = xlog
        self.host = host
        self.error = error
        self.duration = duration

    @classmethod
    def cancelled(cls) -> "ResponseInfo":
        return cls(cls.CANCELLED, error="cancelled by user")

    @classmethod
    def file_error(cls, exc: Exception) -> "ResponseInfo":
        return cls(cls.FILE_ERROR, error=str(exc))

    @classmethod
    def invalid_argument(cls, message: str) -> "ResponseInfo":
        return cls(cls.INVALID_ARGUMENT, error=message)

    @classmethod
    def network_error(
        cls, exc: Exception, host: Optional[str] = None, duration: float = 0.0
    ) -> "ResponseInfo":
        """Map a requests exception to one of the synthetic network codes."""
        if isinstance(exc, requests.Timeout):
            code = cls.TIMED_OUT
        elif isinstance(exc, requests.ConnectionError):
            text = str(exc)
            if "Name or service not known" in text or "getaddrinfo" in text or "NameResolution" in text:
                code = cls.UNKNOWN_HOST
            elif "Connection aborted" in text or "Connection reset" in text:
                code = cls.NETWORK_CONNECTION_LOST
            else:
                code = cls.CANNOT_CONNECT_TO_HOST
        else:
            code = cls.NETWORK_ERROR
        return cls(code, host=host, error=str(exc), duration=duration)

    @property
    def is_ok(self) -> bool:
        # A 200 without a request id did not come from the upload service
        # (captive portals, hijacking proxies).
        return self.status_code == 200 and self.error is None and self.req_id is not None

    @property
    def is_cancelled(self) -> bool:
        return self.status_code == self.CANCELLED

    @property
    def is_network_broken(self) -> bool:
        return self.status_code in (
            self.NETWORK_ERROR,
            self.TIMED_OUT,
            self.UNKNOWN_HOST,
            self.CANNOT_CONNECT_TO_HOST,
            self.NETWORK_CONNECTION_LOST,
        )

    @property
    def is_server_error(self) -> bool:
        return (500 <= self.status_code < 600 and self.status_code != 579) or (
            self.status_code == 996
        )

    @property
    def is_context_expired(self) -> bool:
        return self.status_code == self.CONTEXT_EXPIRED

    def needs_host_switch(self) -> bool:
        """Return True if the next attempt should go to the backup host."""
        return self.is_network_broken or self.is_server_error

    def needs_retry(self) -> bool:
        """Return True if repeating the same request may succeed."""
        if self.is_cancelled:
            return False
        return (
            self.needs_host_switch()
            or self.status_code == 406
            or (self.status_code == 200 and (self.error is not None or self.req_id is None))
        )

    def __repr__(self) -> str:
        return (
            f"ResponseInfo(status_code={self.status_code}, req_id={self.req_id!r}, "
            f"host={self.host!r}, error={self.error!r}, duration={self.duration:.3f})"
        )


class Transport(Protocol):
    """Performs one POST and reports the result through ``complete``.

    Implementations must call ``complete`` exactly once per ``post`` call, from
    any thread.
    """

    def post(
        self,
        url: str,
        data: Body,
        headers: Dict[str, str],
        progress: Optional[ProgressCallback],
        complete: CompletionCallback,
    ) -> None: ...


class _ProgressReader:
    """File-like view over a request body that reports bytes handed to the socket."""

    def __init__(self, data: Body, progress: Optional[ProgressCallback]) -> None:
        self._view = memoryview(data).cast("B")
        self._pos = 0
        self._progress = progress

    def __len__(self) -> int:
        return len(self._view) - self._pos

    def read(self, size: int = -1) -> bytes:
        end = len(self._view) if size is None or size < 0 else min(self._pos + size, len(self._view))
        block = self._view[self._pos : end].tobytes()
        self._pos = end
        if block and self._progress:
            self._progress(self._pos, len(self._view))
        return block


class HttpTransport:
    """requests-based transport.

    The underlying ``requests.Session`` is recycled once it has been idle for
    ``idle_timeout`` seconds, so long pauses between uploads do not reuse dead
    keep-alive connections.
    """

    def __init__(
        self,
        connect_timeout: float = 10,
        response_timeout: float = 60,
        idle_timeout: float = 180,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.connect_timeout = connect_timeout
        self.response_timeout = response_timeout
        self.idle_timeout = idle_timeout
        self._session_factory = session_factory
        self._session: Optional[requests.Session] = None
        self._last_used = 0.0
        self._lock = Lock()

    @classmethod
    def from_config(cls, config: Any) -> "HttpTransport":
        return cls(
            connect_timeout=config.connect_timeout,
            response_timeout=config.response_timeout,
            idle_timeout=config.idle_timeout,
        )

    def _acquire_session(self) -> requests.Session:
        with self._lock:
            now = time.monotonic()
            if self._session is not None and now - self._last_used > self.idle_timeout:
                logger.debug("Recycling idle HTTP session")
                self._session.close()
                self._session = None
            if self._session is None:
                self._session = self._session_factory()
                self._session.headers.update({"User-Agent": USER_AGENT})
            self._last_used = now
            return self._session

    def close(self) -> None:
        with self._lock:
            if self._session is not None:
                self._session.close()
                self._session = None

    def post(
        self,
        url: str,
        data: Body,
        headers: Dict[str, str],
        progress: Optional[ProgressCallback],
        complete: CompletionCallback,
    ) -> None:
        host = urlparse(url).netloc
        start = time.monotonic()
        session = self._acquire_session()
        try:
            response = session.post(
                url,
                data=_ProgressReader(data, progress),
                headers=headers,
                timeout=(self.connect_timeout, self.response_timeout),
            )
        except requests.RequestException as e:
            duration = time.monotonic() - start
            logger.warning(f"POST {url} failed after {duration:.2f}s: {e}")
            complete(ResponseInfo.network_error(e, host=host, duration=duration), None)
            return

        duration = time.monotonic() - start
        info, body = self._parse_response(response, host, duration)
        logger.debug(f"POST {url} -> {info!r}")
        complete(info, body)

    @staticmethod
    def _parse_response(
        response: requests.Response, host: str, duration: float
    ) -> "tuple[ResponseInfo, Optional[Dict[str, Any]]]":
        body: Optional[Dict[str, Any]] = None
        error: Optional[str] = None
        try:
            parsed = response.json()
        except ValueError:
            parsed = None
            if response.status_code == 200:
                error = "Unparsable response body"
        if isinstance(parsed, dict):
            body = parsed
            if response.status_code != 200:
                error = str(parsed.get("error") or f"HTTP {response.status_code}")
        elif response.status_code != 200:
            error = response.text or f"HTTP {response.status_code}"

        info = ResponseInfo(
            response.status_code,
            req_id=response.headers.get("X-Reqid"),
            xlog=response.headers.get("X-Log"),
            host=host,
            error=error,
            duration=duration,
        )
        return info, body
