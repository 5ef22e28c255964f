"""Shared fixtures and network doubles."""

from __future__ import annotations

from typing import Optional

import httpcore
import pytest

from cdnlat.models import CampaignSettings, Endpoint, OutputSettings, Protocol, RequestSample

HOST = "edge.example.com"


def http11_response(
    body: bytes = b"ok",
    status: str = "200 OK",
    origin_time: Optional[str] = None,
) -> bytes:
    lines = [f"HTTP/1.1 {status}", "Content-Type: text/plain", f"Content-Length: {len(body)}"]
    if origin_time is not None:
        lines.append(f"X-Source-Response-Time: {origin_time}")
    return ("\r\n".join(lines) + "\r\n\r\n").encode() + body


class RecordingBackend(httpcore.AsyncMockBackend):
    """Mock backend that remembers dial targets, TLS hostnames and written bytes."""

    def __init__(self, buffer: list[bytes], http2: bool = False) -> None:
        super().__init__(buffer, http2=http2)
        self.connects: list[tuple[str, int]] = []
        self.server_hostnames: list[Optional[str]] = []
        self.written = bytearray()

    async def connect_tcp(self, host, port, timeout=None, local_address=None, socket_options=None):
        self.connects.append((host, port))
        stream = await super().connect_tcp(
            host, port, timeout=timeout, local_address=local_address, socket_options=socket_options,
        )
        backend = self

        async def write(buffer, timeout=None):
            backend.written.extend(buffer)

        async def start_tls(ssl_context, server_hostname=None, timeout=None):
            backend.server_hostnames.append(server_hostname)
            return stream

        stream.write = write
        stream.start_tls = start_tls
        return stream


class _TimeoutStream(httpcore.AsyncNetworkStream):
    async def read(self, max_bytes, timeout=None):
        raise httpcore.ReadTimeout("timed out")

    async def write(self, buffer, timeout=None):
        pass

    async def aclose(self):
        pass

    async def start_tls(self, ssl_context, server_hostname=None, timeout=None):
        return self

    def get_extra_info(self, info):
        return None


class TimeoutBackend(httpcore.AsyncNetworkBackend):
    """Backend whose streams time out on the first read."""

    async def connect_tcp(self, host, port, timeout=None, local_address=None, socket_options=None):
        return _TimeoutStream()

    async def sleep(self, seconds):
        pass


@pytest.fixture
def endpoints() -> list[Endpoint]:
    return [
        Endpoint("edge-a", "203.0.113.10", Protocol.HTTP1),
        Endpoint("edge-b", "203.0.113.20", Protocol.HTTP2),
        Endpoint("edge-c", "2001:db8::1", Protocol.HTTP3),
    ]


@pytest.fixture
def settings(endpoints, tmp_path) -> CampaignSettings:
    return CampaignSettings(
        host=HOST,
        path="/ping",
        rounds=5,
        timeout=2.0,
        interval=0.0,
        endpoints=endpoints,
        output=OutputSettings(dir=str(tmp_path / "output")),
    )


def make_sample(
    index: int,
    ttfb_ms: float = 100.0,
    origin_time_ms: Optional[float] = None,
    error: Optional[str] = None,
) -> RequestSample:
    if error:
        return RequestSample(index=index, error=error)
    cdn = ttfb_ms - origin_time_ms if origin_time_ms is not None else ttfb_ms
    return RequestSample(
        index=index,
        ttfb_ms=ttfb_ms,
        origin_time_ms=origin_time_ms,
        cdn_latency_ms=cdn,
        status_code=200,
        reused=index > 1,
        actual_protocol="HTTP/2",
    )
