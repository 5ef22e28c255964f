from __future__ import annotations

import asyncio
import contextlib
import ssl
import time
from typing import Optional
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
from aioquic.h3.connection import H3_ALPN
from aioquic.h3.events import DataReceived, HeadersReceived
from aioquic.quic.events import ConnectionTerminated

from cdnlat.h3 import H3ClientProtocol, H3Transport, _H3Stream
from cdnlat.models import Endpoint, Protocol
from cdnlat.probe import measure_request
from cdnlat.transport import build_transport
from conftest import HOST

URL = f"https://{HOST}/ping"
H3 = Endpoint("edge-c", "2001:db8::1", Protocol.HTTP3)


class FakeQuicProtocol:
    """Stands in for a connected ``H3ClientProtocol``."""

    def __init__(self, respond: bool = True, error: Optional[str] = None) -> None:
        self.terminated = False
        self.respond = respond
        self.error = error
        self.requests = []
        self.released = []

    def send_request(self, request):
        self.requests.append(request)
        stream = _H3Stream()
        if self.error:
            stream.error = self.error
            stream.headers_received.set()
            stream.ended.set()
        elif self.respond:
            stream.first_byte_at = time.perf_counter()
            stream.headers = [(b":status", b"200"), (b"x-source-response-time", b"0.003s")]
            stream.body.extend(b"ok")
            stream.headers_received.set()
            stream.ended.set()
        stream_id = 4 * (len(self.requests) - 1)
        return stream_id, stream

    def release(self, stream_id):
        self.released.append(stream_id)


def fake_connect(protocols, calls, exc=None):
    @contextlib.asynccontextmanager
    async def connect(host, port, *, configuration, create_protocol):
        calls.append((host, port, configuration, create_protocol))
        if exc is not None:
            raise exc
        yield protocols[len(calls) - 1]

    return connect


@pytest.mark.asyncio
async def test_h3_connection_is_pinned_and_reused() -> None:
    protocol = FakeQuicProtocol()
    calls = []
    handle = build_transport(H3, HOST, 2.0, quic_connect=fake_connect([protocol], calls))
    try:
        first = await measure_request(handle, URL, HOST, 1, timeout=2.0)
        second = await measure_request(handle, URL, HOST, 2, timeout=2.0)
    finally:
        await handle.aclose()

    assert len(calls) == 1
    host, port, configuration, create_protocol = calls[0]
    assert (host, port) == ("2001:db8::1", 443)
    assert configuration.server_name == HOST
    assert configuration.alpn_protocols == H3_ALPN
    assert configuration.verify_mode == ssl.CERT_REQUIRED
    assert create_protocol is H3ClientProtocol

    assert first.error is None, first.error
    assert [first.reused, second.reused] == [False, True]
    for sample in (first, second):
        assert sample.actual_protocol == "HTTP/3"
        assert sample.status_code == 200
        assert sample.ttfb_ms >= 0
        assert sample.origin_time_ms == pytest.approx(3.0)
    assert protocol.released == [0, 4]
    assert protocol.requests[0].headers["host"] == HOST


@pytest.mark.asyncio
async def test_terminated_connection_is_replaced() -> None:
    protocols = [FakeQuicProtocol(), FakeQuicProtocol()]
    calls = []
    handle = build_transport(H3, HOST, 2.0, quic_connect=fake_connect(protocols, calls))
    try:
        first = await measure_request(handle, URL, HOST, 1, timeout=2.0)
        protocols[0].terminated = True
        second = await measure_request(handle, URL, HOST, 2, timeout=2.0)
    finally:
        await handle.aclose()

    assert len(calls) == 2
    assert not first.reused
    assert not second.reused
    assert len(protocols[1].requests) == 1


@pytest.mark.asyncio
async def test_quic_connect_failure_becomes_error_sample() -> None:
    calls = []
    handle = build_transport(H3, HOST, 2.0, quic_connect=fake_connect([], calls, exc=OSError("unreachable")))
    try:
        sample = await measure_request(handle, URL, HOST, 1, timeout=2.0)
    finally:
        await handle.aclose()

    assert sample.error.startswith("Request failed: QUIC connect to 2001:db8::1:443 failed")


@pytest.mark.asyncio
async def test_missing_response_times_out() -> None:
    calls = []
    protocol = FakeQuicProtocol(respond=False)
    handle = build_transport(H3, HOST, 0.05, quic_connect=fake_connect([protocol], calls))
    try:
        sample = await measure_request(handle, URL, HOST, 1, timeout=0.05)
    finally:
        await handle.aclose()

    assert sample.error.startswith("Request timed out")
    assert protocol.released == [0]


@pytest.mark.asyncio
async def test_stream_error_becomes_error_sample() -> None:
    calls = []
    protocol = FakeQuicProtocol(error="QUIC connection closed: idle timeout")
    handle = build_transport(H3, HOST, 2.0, quic_connect=fake_connect([protocol], calls))
    try:
        sample = await measure_request(handle, URL, HOST, 1, timeout=2.0)
    finally:
        await handle.aclose()

    assert sample.error == "Request failed: QUIC connection closed: idle timeout"


class SlowHeadersProtocol(FakeQuicProtocol):
    """Answers headers after *delay* seconds and then never finishes the body."""

    def __init__(self, delay: float) -> None:
        super().__init__(respond=False)
        self.delay = delay

    def send_request(self, request):
        stream_id, stream = super().send_request(request)

        def headers():
            stream.first_byte_at = time.perf_counter()
            stream.headers = [(b":status", b"200")]
            stream.headers_received.set()

        asyncio.get_running_loop().call_later(self.delay, headers)
        return stream_id, stream


@pytest.mark.asyncio
async def test_header_and_body_waits_share_one_deadline(monkeypatch) -> None:
    timeouts = []
    real_wait_for = asyncio.wait_for

    async def recording_wait_for(aw, timeout):
        timeouts.append(timeout)
        return await real_wait_for(aw, timeout)

    monkeypatch.setattr(asyncio, "wait_for", recording_wait_for)
    transport = H3Transport(H3.ip, HOST, 0.3, connect=fake_connect([SlowHeadersProtocol(delay=0.1)], []))
    try:
        with pytest.raises(httpx.ReadTimeout):
            await transport.handle_async_request(_request())
    finally:
        await transport.aclose()

    connect, headers, body = timeouts
    assert connect <= 0.3
    assert headers <= connect
    assert body <= 0.3 - 0.1 + 0.01


# ── H3ClientProtocol event routing ───────────────────────────────────


@pytest_asyncio.fixture
async def client_protocol(monkeypatch):
    # QuicConnectionProtocol binds to the running loop on construction.
    monkeypatch.setattr("cdnlat.h3.H3Connection", MagicMock())
    quic = MagicMock()
    quic.get_next_available_stream_id.return_value = 0
    quic.datagrams_to_send.return_value = []
    quic.get_timer.return_value = None
    return H3ClientProtocol(quic)


def _request():
    return httpx.Request("GET", URL, headers={"Host": HOST, "Connection": "keep-alive", "Accept": "*/*"})


@pytest.mark.asyncio
async def test_send_request_strips_connection_headers(client_protocol) -> None:
    stream_id, _ = client_protocol.send_request(_request())

    kwargs = client_protocol._http.send_headers.call_args.kwargs
    headers = dict(kwargs["headers"])
    assert stream_id == 0
    assert kwargs["end_stream"] is True
    assert headers[b":authority"] == HOST.encode()
    assert headers[b":path"] == b"/ping"
    assert headers[b"accept"] == b"*/*"
    assert b"host" not in headers
    assert b"connection" not in headers


@pytest.mark.asyncio
async def test_headers_and_data_complete_the_stream(client_protocol) -> None:
    stream_id, stream = client_protocol.send_request(_request())

    client_protocol._http.handle_event.return_value = [
        HeadersReceived(headers=[(b":status", b"204")], stream_id=stream_id, stream_ended=False),
        DataReceived(data=b"hello", stream_id=stream_id, stream_ended=True),
    ]
    client_protocol.quic_event_received(MagicMock())

    assert stream.headers_received.is_set()
    assert stream.ended.is_set()
    assert stream.first_byte_at is not None
    assert stream.headers == [(b":status", b"204")]
    assert bytes(stream.body) == b"hello"


@pytest.mark.asyncio
async def test_connection_terminated_fails_pending_streams(client_protocol) -> None:
    _, stream = client_protocol.send_request(_request())
    client_protocol._http.handle_event.return_value = []

    client_protocol.quic_event_received(
        ConnectionTerminated(error_code=0, frame_type=None, reason_phrase="idle timeout")
    )

    assert client_protocol.terminated
    assert stream.error == "QUIC connection closed: idle timeout"
    assert stream.ended.is_set()
