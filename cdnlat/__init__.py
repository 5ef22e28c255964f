"""cdnlat: per-edge CDN latency comparison over HTTP/1.1, HTTP/2 and HTTP/3."""

__version__ = "0.1.0"
