"""Tests for ResponseInfo classification and the requests-based transport."""

import pytest
import requests

from resumable_storage.core.models import UploadConfig
from resumable_storage.core.transport import USER_AGENT, HttpTransport, ResponseInfo, _ProgressReader

URL = "http://up.test/mkblk/3"


class Capture:
    def __init__(self):
        self.calls = []

    def __call__(self, info, body):
        self.calls.append((info, body))

    @property
    def info(self):
        assert len(self.calls) == 1
        return self.calls[0][0]

    @property
    def body(self):
        return self.calls[0][1]


def post(transport, url=URL, data=b"abc", progress=None):
    capture = Capture()
    transport.post(url, data, {"Authorization": "UpToken t"}, progress, capture)
    return capture


class TestResponseInfo:
    def test_ok_requires_request_id(self):
        assert ResponseInfo(200, req_id="r").is_ok
        assert not ResponseInfo(200).is_ok
        assert not ResponseInfo(200, req_id="r", error="garbled").is_ok

    @pytest.mark.parametrize(
        "status,switch,retry",
        [
            (200, False, False),
            (400, False, False),
            (401, False, False),
            (406, False, True),
            (500, True, True),
            (503, True, True),
            (579, False, False),
            (599, True, True),
            (614, False, False),
            (701, False, False),
            (996, True, True),
            (ResponseInfo.NETWORK_ERROR, True, True),
            (ResponseInfo.TIMED_OUT, True, True),
            (ResponseInfo.UNKNOWN_HOST, True, True),
            (ResponseInfo.CANNOT_CONNECT_TO_HOST, True, True),
            (ResponseInfo.NETWORK_CONNECTION_LOST, True, True),
            (ResponseInfo.CANCELLED, False, False),
            (ResponseInfo.FILE_ERROR, False, False),
            (ResponseInfo.INVALID_ARGUMENT, False, False),
        ],
    )
    def test_retry_classification(self, status, switch, retry):
        info = ResponseInfo(status, req_id="r")
        assert info.needs_host_switch() is switch
        assert info.needs_retry() is retry

    def test_ok_status_with_error_is_retried_on_same_host(self):
        info = ResponseInfo(200, req_id="r", error="Unparsable response body")
        assert info.needs_retry()
        assert not info.needs_host_switch()

    def test_ok_status_without_request_id_is_retried_on_same_host(self):
        info = ResponseInfo(200)
        assert not info.is_ok
        assert info.needs_retry()
        assert not info.needs_host_switch()

    def test_factories(self):
        assert ResponseInfo.cancelled().is_cancelled
        assert ResponseInfo.file_error(OSError("gone")).error == "gone"
        assert ResponseInfo.invalid_argument("bad").status_code == ResponseInfo.INVALID_ARGUMENT
        assert ResponseInfo(ResponseInfo.CONTEXT_EXPIRED).is_context_expired

    @pytest.mark.parametrize(
        "exc,status",
        [
            (requests.exceptions.ConnectTimeout("slow"), ResponseInfo.TIMED_OUT),
            (requests.exceptions.ReadTimeout("slow"), ResponseInfo.TIMED_OUT),
            (requests.exceptions.ConnectionError("Connection refused"), ResponseInfo.CANNOT_CONNECT_TO_HOST),
            (
                requests.exceptions.ConnectionError("('Connection aborted.', RemoteDisconnected())"),
                ResponseInfo.NETWORK_CONNECTION_LOST,
            ),
            (
                requests.exceptions.ConnectionError("Failed to resolve: [Errno -2] Name or service not known"),
                ResponseInfo.UNKNOWN_HOST,
            ),
            (requests.exceptions.ChunkedEncodingError("broken"), ResponseInfo.NETWORK_ERROR),
        ],
    )
    def test_network_error_mapping(self, exc, status):
        info = ResponseInfo.network_error(exc, host="up.test", duration=1.5)
        assert info.status_code == status
        assert info.host == "up.test"
        assert info.duration == 1.5
        assert info.is_network_broken
        assert info.needs_retry()


class TestProgressReader:
    def test_reports_cumulative_bytes(self):
        seen = []
        reader = _ProgressReader(b"abcdef", lambda written, total: seen.append((written, total)))

        assert len(reader) == 6
        assert reader.read(4) == b"abcd"
        assert len(reader) == 2
        assert reader.read() == b"ef"
        assert reader.read() == b""
        assert seen == [(4, 6), (6, 6)]

    def test_reads_memoryview_slices(self):
        buffer = bytearray(b"0123456789")
        reader = _ProgressReader(memoryview(buffer)[2:5], None)
        assert reader.read() == b"234"


class TestHttpTransport:
    def test_success_parses_body_and_headers(self, requests_mock):
        requests_mock.post(
            URL,
            json={"ctx": "c1", "crc32": 891568578},
            headers={"X-Reqid": "req-1", "X-Log": "mkblk"},
        )
        transport = HttpTransport()

        capture = post(transport)

        info = capture.info
        assert info.is_ok
        assert info.req_id == "req-1"
        assert info.xlog == "mkblk"
        assert info.host == "up.test"
        assert capture.body == {"ctx": "c1", "crc32": 891568578}

        sent = requests_mock.last_request
        assert sent.headers["Authorization"] == "UpToken t"
        assert sent.headers["User-Agent"] == USER_AGENT
        assert sent.headers["Content-Length"] == "3"

    def test_unparsable_ok_body(self, requests_mock):
        requests_mock.post(URL, text="<html>portal</html>", headers={"X-Reqid": "req-1"})

        info = post(HttpTransport()).info

        assert not info.is_ok
        assert info.error == "Unparsable response body"
        assert info.needs_retry()

    def test_ok_without_request_id_is_not_ok(self, requests_mock):
        requests_mock.post(URL, json={"ctx": "c1", "crc32": 1})
        assert not post(HttpTransport()).info.is_ok

    def test_server_error_body(self, requests_mock):
        requests_mock.post(URL, status_code=503, json={"error": "service unavailable"}, headers={"X-Reqid": "r"})

        capture = post(HttpTransport())

        assert capture.info.status_code == 503
        assert capture.info.error == "service unavailable"
        assert capture.info.needs_host_switch()
        assert capture.body == {"error": "service unavailable"}

    def test_plain_text_error(self, requests_mock):
        requests_mock.post(URL, status_code=500, text="oops")

        capture = post(HttpTransport())

        assert capture.info.error == "oops"
        assert capture.body is None

    def test_timeout_becomes_synthetic_status(self, requests_mock):
        requests_mock.post(URL, exc=requests.exceptions.ConnectTimeout)

        capture = post(HttpTransport())

        assert capture.info.status_code == ResponseInfo.TIMED_OUT
        assert capture.info.host == "up.test"
        assert capture.body is None

    def test_connection_error_becomes_synthetic_status(self, requests_mock):
        requests_mock.post(URL, exc=requests.exceptions.ConnectionError("Connection refused"))

        info = post(HttpTransport()).info

        assert info.status_code == ResponseInfo.CANNOT_CONNECT_TO_HOST
        assert info.needs_host_switch()

    def test_from_config(self):
        config = UploadConfig(connect_timeout=3, response_timeout=7, idle_timeout=11)
        transport = HttpTransport.from_config(config)
        assert (transport.connect_timeout, transport.response_timeout, transport.idle_timeout) == (3, 7, 11)


class FakeSession:
    def __init__(self):
        self.headers = {}
        self.closed = False

    def close(self):
        self.closed = True


class TestSessionReuse:
    def test_session_reused_while_active(self):
        transport = HttpTransport(session_factory=FakeSession)
        first = transport._acquire_session()
        assert transport._acquire_session() is first
        assert first.headers["User-Agent"] == USER_AGENT

    def test_idle_session_recycled(self):
        transport = HttpTransport(idle_timeout=60, session_factory=FakeSession)
        first = transport._acquire_session()
        transport._last_used -= 61

        second = transport._acquire_session()

        assert second is not first
        assert first.closed

    def test_close(self):
        transport = HttpTransport(session_factory=FakeSession)
        session = transport._acquire_session()
        transport.close()
        assert session.closed
        transport.close()
