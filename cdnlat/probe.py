"""Request instrumentation: one timed GET per call.

Time-to-first-byte is taken from the socket read that delivered the
response headers (see :mod:`cdnlat.timing`), so neither header parsing
nor body transfer is included.  Any failure is returned as a
:class:`RequestSample` with ``error`` set; nothing is raised.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Optional

import httpx

from cdnlat.config import ORIGIN_TIME_HEADER, PROBE_GRACE_S, USER_AGENT
from cdnlat.models import Endpoint, RequestSample
from cdnlat.timing import ProbeClock, activate
from cdnlat.transport import TransportHandle

logger = logging.getLogger(__name__)


def parse_origin_time(value: Optional[str]) -> Optional[float]:
    """Parse an origin-time header (seconds, optional ``s`` suffix) to milliseconds.

    Returns ``None`` when the value is missing or cannot be parsed, so that
    "no origin data" stays distinguishable from a genuine ``0``.

    >>> parse_origin_time("0.045s")
    45.0
    >>> parse_origin_time("abc") is None
    True
    """
    if value is None:
        return None
    text = value.strip()
    if text[-1:] in ("s", "S"):
        text = text[:-1].strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds * 1000.0


def _failed(index: int, error: str) -> RequestSample:
    return RequestSample(index=index, error=error)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


async def _send(
    handle: TransportHandle,
    url: str,
    host: str,
    index: int,
) -> RequestSample:
    clock = ProbeClock()
    client = handle.client

    try:
        request = client.build_request(
            "GET",
            url,
            headers={"Host": host, "User-Agent": USER_AGENT},
            extensions={"trace": clock.on_trace},
        )
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
        return _failed(index, f"Request construction failed: {exc}")

    with activate(clock):
        try:
            clock.start()
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            return _failed(index, f"Request timed out: {_describe(exc)}")
        except httpx.HTTPError as exc:
            return _failed(index, f"Request failed: {_describe(exc)}")

        try:
            # Drain so the connection goes back to the pool for later rounds.
            await response.aread()
        except httpx.HTTPError as exc:
            logger.debug("Body read failed for %s: %s", handle.endpoint.label, exc)
        finally:
            await response.aclose()

    ttfb_ms = clock.ttfb_ms
    origin_ms = parse_origin_time(response.headers.get(ORIGIN_TIME_HEADER))
    cdn_ms = ttfb_ms - origin_ms if origin_ms is not None else ttfb_ms

    return RequestSample(
        index=index,
        ttfb_ms=ttfb_ms,
        origin_time_ms=origin_ms,
        cdn_latency_ms=cdn_ms,
        status_code=response.status_code,
        reused=clock.reused,
        actual_protocol=response.http_version,
    )


async def measure_request(
    handle: TransportHandle,
    url: str,
    host: str,
    index: int,
    *,
    timeout: Optional[float] = None,
    log: logging.Logger = logger,
) -> RequestSample:
    """Issue one GET through *handle* and return its :class:`RequestSample`.

    *timeout* bounds the whole probe (plus a grace period) on top of the
    client's own request timeout.  Errors of any kind are captured in the
    sample's ``error`` field.
    """
    outer = None if timeout is None else timeout + PROBE_GRACE_S
    try:
        sample = await asyncio.wait_for(_send(handle, url, host, index), timeout=outer)
    except asyncio.TimeoutError:
        sample = _failed(index, "Overall probe timeout exceeded")
    except Exception as exc:
        log.debug("Probe crashed for %s", handle.endpoint.label, exc_info=True)
        sample = _failed(index, f"Request failed: {exc}")

    log_sample(handle.endpoint, sample, log)
    return sample


def log_sample(endpoint: Endpoint, sample: RequestSample, log: logging.Logger = logger) -> None:
    """Write the one-line progress record for a probe."""
    if sample.error:
        log.warning("[%s/%s] #%d error: %s", endpoint.name, endpoint.protocol, sample.index, sample.error)
        return

    origin = f"{sample.origin_time_ms:.2f}ms" if sample.has_origin_time else "-"
    log.info(
        "[%s/%s] #%d TTFB: %.2fms, origin: %s, CDN: %.2fms [%s] [%s]",
        endpoint.name,
        endpoint.protocol,
        sample.index,
        sample.ttfb_ms,
        origin,
        sample.cdn_latency_ms,
        "reused" if sample.reused else "new",
        sample.actual_protocol,
    )
