"""HTTP/3 transport over aioquic, pinned to a fixed IP.

QUIC has no separate dial-then-upgrade step, so the IP override happens
in the connection setup itself: an ephemeral UDP endpoint is bound and
the QUIC session is opened straight against ``(ip, port)`` while the TLS
SNI carries the virtual hostname.

The transport keeps one QUIC connection open and reuses it for later
requests until the peer closes it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import ssl
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import certifi
import httpx
from aioquic.asyncio import connect as quic_connect
from aioquic.asyncio.protocol import QuicConnectionProtocol
from aioquic.h3.connection import H3_ALPN, H3Connection
from aioquic.h3.events import DataReceived, H3Event, HeadersReceived
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.events import ConnectionTerminated, QuicEvent

from cdnlat.config import DEFAULT_HTTPS_PORT

logger = logging.getLogger(__name__)

# Signature of aioquic.asyncio.connect; returns an async context manager
# yielding the connected protocol.
QuicConnect = Callable[..., Any]

# Connection-specific headers are forbidden in HTTP/3 (RFC 9114 4.2).
_HOP_BY_HOP = {b"host", b"connection", b"keep-alive", b"proxy-connection", b"transfer-encoding", b"upgrade"}


@dataclass
class _H3Stream:
    """Response state for one request stream."""

    first_byte_at: Optional[float] = None
    headers: list[tuple[bytes, bytes]] = field(default_factory=list)
    body: bytearray = field(default_factory=bytearray)
    headers_received: asyncio.Event = field(default_factory=asyncio.Event)
    ended: asyncio.Event = field(default_factory=asyncio.Event)
    error: Optional[str] = None


class H3ClientProtocol(QuicConnectionProtocol):
    """QUIC protocol speaking HTTP/3 for simple GET requests."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._http = H3Connection(self._quic)
        self._streams: dict[int, _H3Stream] = {}
        self.terminated = False

    def quic_event_received(self, event: QuicEvent) -> None:
        if isinstance(event, ConnectionTerminated):
            self.terminated = True
            reason = event.reason_phrase or f"error code {event.error_code}"
            for stream in self._streams.values():
                if not stream.ended.is_set():
                    stream.error = f"QUIC connection closed: {reason}"
                    stream.headers_received.set()
                    stream.ended.set()

        for h3_event in self._http.handle_event(event):
            self._h3_event_received(h3_event)

    def _h3_event_received(self, event: H3Event) -> None:
        stream = self._streams.get(getattr(event, "stream_id", -1))
        if stream is None:
            return

        if isinstance(event, HeadersReceived):
            if stream.first_byte_at is None:
                stream.first_byte_at = time.perf_counter()
            if not stream.headers_received.is_set():
                stream.headers = list(event.headers)
                stream.headers_received.set()
            if event.stream_ended:
                stream.ended.set()
        elif isinstance(event, DataReceived):
            stream.body.extend(event.data)
            if event.stream_ended:
                stream.ended.set()

    def send_request(self, request: httpx.Request) -> tuple[int, _H3Stream]:
        stream_id = self._quic.get_next_available_stream_id()
        headers = [
            (b":method", request.method.encode()),
            (b":scheme", request.url.raw_scheme),
            (b":authority", request.url.netloc),
            (b":path", request.url.raw_path),
        ]
        for name, value in request.headers.raw:
            name = name.lower()
            if name not in _HOP_BY_HOP:
                headers.append((name, value))

        stream = _H3Stream()
        self._streams[stream_id] = stream
        self._http.send_headers(stream_id=stream_id, headers=headers, end_stream=True)
        self.transmit()
        return stream_id, stream

    def release(self, stream_id: int) -> None:
        self._streams.pop(stream_id, None)


class H3Transport(httpx.AsyncBaseTransport):
    """httpx transport issuing requests over a pinned QUIC connection."""

    def __init__(
        self,
        ip: str,
        server_name: str,
        timeout: float,
        connect: Optional[QuicConnect] = None,
    ) -> None:
        self.ip = ip
        self.server_name = server_name
        self.timeout = timeout
        self._connect = connect or quic_connect
        self._protocol: Optional[H3ClientProtocol] = None
        self._exit_stack: Optional[contextlib.AsyncExitStack] = None
        self._lock = asyncio.Lock()

    def _configuration(self) -> QuicConfiguration:
        configuration = QuicConfiguration(
            is_client=True,
            alpn_protocols=H3_ALPN,
            server_name=self.server_name,
            verify_mode=ssl.CERT_REQUIRED,
        )
        configuration.load_verify_locations(cafile=certifi.where())
        return configuration

    async def _get_protocol(self, request: httpx.Request, deadline: float) -> H3ClientProtocol:
        async with self._lock:
            if self._protocol is not None and not self._protocol.terminated:
                return self._protocol
            await self._close_connection()

            port = request.url.port or DEFAULT_HTTPS_PORT
            trace = request.extensions.get("trace")
            if trace is not None:
                await trace("connection.connect_udp.started", {"host": self.ip, "port": port})

            stack = contextlib.AsyncExitStack()
            try:
                protocol = await asyncio.wait_for(
                    stack.enter_async_context(
                        self._connect(
                            self.ip,
                            port,
                            configuration=self._configuration(),
                            create_protocol=H3ClientProtocol,
                        )
                    ),
                    timeout=_remaining(deadline),
                )
            except asyncio.TimeoutError as exc:
                await stack.aclose()
                raise httpx.ConnectTimeout(f"QUIC handshake with {self.ip}:{port} timed out", request=request) from exc
            except (ConnectionError, OSError) as exc:
                await stack.aclose()
                raise httpx.ConnectError(f"QUIC connect to {self.ip}:{port} failed: {exc}", request=request) from exc

            logger.debug("QUIC connection established to %s:%d (%s)", self.ip, port, self.server_name)
            if trace is not None:
                await trace("connection.connect_udp.complete", {"return_value": protocol})
            self._protocol = protocol
            self._exit_stack = stack
            return protocol

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        # Connect, headers and body share one deadline.
        deadline = asyncio.get_running_loop().time() + self.timeout
        protocol = await self._get_protocol(request, deadline)
        trace = request.extensions.get("trace")

        stream_id, stream = protocol.send_request(request)
        try:
            if trace is not None:
                await trace("http3.receive_response_headers.started", {"request": request})
            try:
                await asyncio.wait_for(stream.headers_received.wait(), timeout=_remaining(deadline))
                if stream.error is None:
                    await asyncio.wait_for(stream.ended.wait(), timeout=_remaining(deadline))
            except asyncio.TimeoutError as exc:
                raise httpx.ReadTimeout("HTTP/3 response timed out", request=request) from exc

            if stream.error is not None:
                raise httpx.RemoteProtocolError(stream.error, request=request)

            status_code, headers = _split_headers(stream.headers)
            if trace is not None:
                await trace(
                    "http3.receive_response_headers.complete",
                    {"first_byte_at": stream.first_byte_at, "return_value": (status_code, headers)},
                )
        finally:
            protocol.release(stream_id)

        return httpx.Response(
            status_code,
            headers=headers,
            stream=httpx.ByteStream(bytes(stream.body)),
            extensions={"http_version": b"HTTP/3"},
            request=request,
        )

    async def _close_connection(self) -> None:
        stack, self._exit_stack, self._protocol = self._exit_stack, None, None
        if stack is not None:
            with contextlib.suppress(Exception):
                await stack.aclose()

    async def aclose(self) -> None:
        async with self._lock:
            await self._close_connection()


def _remaining(deadline: float) -> float:
    return max(deadline - asyncio.get_running_loop().time(), 0.0)


def _split_headers(raw: list[tuple[bytes, bytes]]) -> tuple[int, list[tuple[bytes, bytes]]]:
    """Separate the ``:status`` pseudo-header from regular headers."""
    status_code = 0
    headers: list[tuple[bytes, bytes]] = []
    for name, value in raw:
        if name == b":status":
            status_code = int(value)
        elif not name.startswith(b":"):
            headers.append((name, value))
    if not status_code:
        raise httpx.RemoteProtocolError("HTTP/3 response without :status")
    return status_code, headers
