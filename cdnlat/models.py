"""Data models for cdnlat."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from cdnlat.config import DEFAULT_INTERVAL, DEFAULT_OUTPUT_DIR, DEFAULT_PATH, DEFAULT_TIMEOUT


class Protocol(enum.Enum):
    """Transport protocol an endpoint is measured with."""

    HTTP1 = "HTTP/1.1"
    HTTP2 = "HTTP/2"
    HTTP3 = "HTTP/3"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> Protocol:
        """Parse a protocol selector such as ``h2`` or ``HTTP/3``."""
        key = str(text).strip().lower()
        for protocol, aliases in _PROTOCOL_ALIASES.items():
            if key in aliases:
                return protocol
        raise ValueError(f"Unsupported protocol: {text!r}")


_PROTOCOL_ALIASES = {
    Protocol.HTTP1: {"http/1.1", "http1", "http1.1", "h1", "http/1"},
    Protocol.HTTP2: {"http/2", "http2", "h2", "http/2.0"},
    Protocol.HTTP3: {"http/3", "http3", "h3", "http/3.0"},
}


@dataclass(frozen=True)
class Endpoint:
    """A named edge reachable at a fixed IP, measured with one protocol."""

    name: str
    ip: str
    protocol: Protocol = Protocol.HTTP1

    @property
    def label(self) -> str:
        return f"{self.name} ({self.protocol})"


@dataclass(frozen=True)
class RequestSample:
    """Result of a single probe."""

    index: int  # 1-based round number
    ttfb_ms: float = 0.0
    origin_time_ms: Optional[float] = None  # None when the header is absent
    cdn_latency_ms: float = 0.0
    status_code: int = 0
    reused: bool = False
    actual_protocol: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def has_origin_time(self) -> bool:
        return self.origin_time_ms is not None


@dataclass
class LatencyStats:
    """Aggregated statistics for one latency metric (milliseconds)."""

    avg: float = 0.0
    min: float = 0.0
    max: float = 0.0
    p50: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    stdev: float = 0.0
    jitter: float = 0.0


@dataclass
class EndpointSummary:
    """Aggregate over all samples of one endpoint.

    ``cdn_latency`` and ``origin_time_avg`` are ``None`` unless
    ``has_cdn_data`` is set; they are absent, not zero.
    """

    endpoint: Endpoint
    total: int = 0
    success_count: int = 0
    fail_count: int = 0
    has_cdn_data: bool = False
    ttfb: LatencyStats = field(default_factory=LatencyStats)
    cdn_latency: Optional[LatencyStats] = None
    origin_time_avg: Optional[float] = None


@dataclass
class EndpointResult:
    """Ordered samples and summary for one endpoint."""

    endpoint: Endpoint
    samples: list[RequestSample] = field(default_factory=list)
    summary: Optional[EndpointSummary] = None


@dataclass
class OutputSettings:
    """Where and what the reporting collaborators write."""

    dir: str = DEFAULT_OUTPUT_DIR
    enable_log: bool = False
    enable_json: bool = False
    enable_html: bool = False
    enable_csv: bool = False


@dataclass
class CampaignSettings:
    """Validated configuration for one measurement campaign."""

    host: str
    path: str = DEFAULT_PATH
    rounds: int = 10
    timeout: float = DEFAULT_TIMEOUT  # seconds, per request
    interval: float = DEFAULT_INTERVAL  # seconds between rounds
    endpoints: list[Endpoint] = field(default_factory=list)
    output: OutputSettings = field(default_factory=OutputSettings)

    @property
    def url(self) -> str:
        return f"https://{self.host}{self.path}"


@dataclass
class CampaignResult:
    """Complete campaign output handed to display and export."""

    settings: CampaignSettings
    started_at: datetime
    finished_at: Optional[datetime] = None
    results: list[EndpointResult] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)  # label -> error

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def summaries(self) -> list[EndpointSummary]:
        return [r.summary for r in self.results if r.summary is not None]
