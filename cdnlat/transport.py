"""Protocol transport factory.

Builds one ``httpx.AsyncClient`` per endpoint whose sockets are pinned to
the endpoint's IP while the virtual hostname is kept for the Host header,
TLS SNI and certificate validation.

HTTP/1.1 and HTTP/2 go through httpcore with :class:`ForcedIPBackend`
injected as the network backend: it swaps the connect target for the
pinned IP and restricts ALPN to the single requested protocol.  HTTP/3
uses :class:`cdnlat.h3.H3Transport`, which performs the same override
inside its QUIC connection setup.

Public API:
    build_transport   -- create a TransportHandle for an endpoint
    TransportHandle   -- endpoint + pinned client pair
    TransportBuildError
"""

from __future__ import annotations

import ipaddress
import logging
import ssl
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpcore
import httpx

from cdnlat.config import KEEPALIVE_EXPIRY, MAX_CONNECTIONS, MAX_KEEPALIVE_CONNECTIONS
from cdnlat.h3 import H3Transport, QuicConnect
from cdnlat.models import Endpoint, Protocol
from cdnlat.timing import record_read

logger = logging.getLogger(__name__)

# ALPN identifiers offered for each TCP-based protocol.
_ALPN = {
    Protocol.HTTP1: ["http/1.1"],
    Protocol.HTTP2: ["h2"],
}


class TransportBuildError(Exception):
    """Raised when a handle cannot be built for an endpoint."""


@dataclass(frozen=True)
class TransportHandle:
    """An endpoint and the client pinned to its IP."""

    endpoint: Endpoint
    client: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.client.aclose()


# ---------------------------------------------------------------------------
# Forced-IP network backend
# ---------------------------------------------------------------------------

class _PinnedStream(httpcore.AsyncNetworkStream):
    """Network stream that forces ALPN on TLS upgrade and stamps reads."""

    def __init__(self, stream: httpcore.AsyncNetworkStream, alpn: list[str]) -> None:
        self._stream = stream
        self._alpn = alpn

    async def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        data = await self._stream.read(max_bytes, timeout=timeout)
        if data:
            record_read()
        return data

    async def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        await self._stream.write(buffer, timeout=timeout)

    async def aclose(self) -> None:
        await self._stream.aclose()

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpcore.AsyncNetworkStream:
        # httpcore offers ["http/1.1", "h2"] whenever HTTP/2 is enabled;
        # narrow it to the protocol under test.
        ssl_context.set_alpn_protocols(self._alpn)
        stream = await self._stream.start_tls(
            ssl_context, server_hostname=server_hostname, timeout=timeout,
        )
        return _PinnedStream(stream, self._alpn)

    def get_extra_info(self, info: str) -> Any:
        return self._stream.get_extra_info(info)


class ForcedIPBackend(httpcore.AsyncNetworkBackend):
    """Network backend that dials a fixed IP regardless of the request host.

    The requested port is kept.  *inner* performs the actual dial and
    defaults to httpcore's anyio backend; tests substitute
    ``httpcore.AsyncMockBackend``.
    """

    def __init__(
        self,
        ip: str,
        alpn: list[str],
        inner: Optional[httpcore.AsyncNetworkBackend] = None,
    ) -> None:
        self.ip = ip
        self.alpn = alpn
        self._inner = inner or httpcore.AnyIOBackend()

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
        local_address: Optional[str] = None,
        socket_options: Optional[Iterable[Any]] = None,
    ) -> httpcore.AsyncNetworkStream:
        logger.debug("Dialing %s:%d for %s", self.ip, port, host)
        stream = await self._inner.connect_tcp(
            self.ip,
            port,
            timeout=timeout,
            local_address=local_address,
            socket_options=socket_options,
        )
        return _PinnedStream(stream, self.alpn)

    async def connect_unix_socket(
        self,
        path: str,
        timeout: Optional[float] = None,
        socket_options: Optional[Iterable[Any]] = None,
    ) -> httpcore.AsyncNetworkStream:
        raise httpcore.ConnectError("Unix sockets are not supported for pinned endpoints")

    async def sleep(self, seconds: float) -> None:
        await self._inner.sleep(seconds)


class _ForcedIPTransport(httpx.AsyncHTTPTransport):
    """``httpx.AsyncHTTPTransport`` whose pool dials through :class:`ForcedIPBackend`."""

    def __init__(
        self,
        ip: str,
        protocol: Protocol,
        network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
    ) -> None:
        # The parent initializer is not called: the pool it would build is the
        # only state AsyncHTTPTransport keeps, and this one replaces it.
        http2 = protocol is Protocol.HTTP2
        ssl_context = httpx.create_ssl_context()
        self._pool = httpcore.AsyncConnectionPool(
            ssl_context=ssl_context,
            max_connections=MAX_CONNECTIONS,
            max_keepalive_connections=MAX_KEEPALIVE_CONNECTIONS,
            keepalive_expiry=KEEPALIVE_EXPIRY,
            http1=not http2,
            http2=http2,
            network_backend=ForcedIPBackend(ip, _ALPN[protocol], inner=network_backend),
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def _validate_ip(ip: str) -> str:
    try:
        return str(ipaddress.ip_address(ip.strip()))
    except (ValueError, AttributeError) as exc:
        raise TransportBuildError(f"Invalid endpoint IP {ip!r}: {exc}") from exc


def build_transport(
    endpoint: Endpoint,
    host: str,
    timeout: float,
    *,
    network_backend: Optional[httpcore.AsyncNetworkBackend] = None,
    quic_connect: Optional[QuicConnect] = None,
) -> TransportHandle:
    """Create the pinned client for *endpoint*.

    Parameters
    ----------
    endpoint:
        The endpoint whose IP every connection is forced to.
    host:
        Virtual hostname used for SNI, certificate checks and Host header.
    timeout:
        Per-request timeout in seconds.
    network_backend:
        Optional dialer underneath the forced-IP backend (HTTP/1.1, HTTP/2).
    quic_connect:
        Optional QUIC connect function (HTTP/3).

    Raises
    ------
    TransportBuildError
        If the IP cannot be parsed or the protocol is not supported.
    """
    ip = _validate_ip(endpoint.ip)
    protocol = endpoint.protocol

    transport: httpx.AsyncBaseTransport
    if protocol in (Protocol.HTTP1, Protocol.HTTP2):
        transport = _ForcedIPTransport(ip, protocol, network_backend=network_backend)
    elif protocol is Protocol.HTTP3:
        transport = H3Transport(ip, host, timeout, connect=quic_connect)
    else:
        raise TransportBuildError(f"Unsupported protocol for {endpoint.name}: {protocol!r}")

    client = httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(timeout),
        follow_redirects=False,
        trust_env=False,
    )
    logger.debug("Built %s transport for %s -> %s", protocol, endpoint.name, ip)
    return TransportHandle(endpoint=endpoint, client=client)
