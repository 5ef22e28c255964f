"""Statistical aggregation for latency measurements."""

from __future__ import annotations

import math
from typing import Sequence

from cdnlat.config import PERCENTILES
from cdnlat.models import Endpoint, EndpointSummary, LatencyStats, RequestSample


def percentile(sorted_vals: Sequence[float], p: float) -> float:
    """Nearest-rank percentile, lower-biased: ``sorted_vals[floor((n-1)*p)]``.

    *p* is a fraction in ``[0, 1]``.  Returns 0.0 for an empty sequence.
    """
    n = len(sorted_vals)
    if n == 0:
        return 0.0
    k = math.floor((n - 1) * p)
    return sorted_vals[min(max(k, 0), n - 1)]


def compute_stats(values: Sequence[float]) -> LatencyStats:
    """Compute statistical summary from a list of values (in sample order)."""
    if not values:
        return LatencyStats()

    sorted_vals = sorted(values)
    n = len(sorted_vals)

    avg = sum(sorted_vals) / n
    variance = sum((v - avg) ** 2 for v in sorted_vals) / n if n > 1 else 0.0

    return LatencyStats(
        avg=avg,
        min=sorted_vals[0],
        max=sorted_vals[-1],
        p50=percentile(sorted_vals, PERCENTILES["p50"]),
        p90=percentile(sorted_vals, PERCENTILES["p90"]),
        p95=percentile(sorted_vals, PERCENTILES["p95"]),
        p99=percentile(sorted_vals, PERCENTILES["p99"]),
        stdev=math.sqrt(variance),
        jitter=_compute_jitter(values),
    )


def _compute_jitter(values: Sequence[float]) -> float:
    """Compute jitter as average absolute difference between consecutive samples."""
    if len(values) < 2:
        return 0.0
    diffs = [abs(values[i + 1] - values[i]) for i in range(len(values) - 1)]
    return sum(diffs) / len(diffs)


def summarize(endpoint: Endpoint, samples: Sequence[RequestSample]) -> EndpointSummary:
    """Aggregate one endpoint's samples into an :class:`EndpointSummary`.

    Failed samples only count towards ``total`` and ``fail_count``.  CDN
    latency and origin time are aggregated over successful samples that
    carried the origin-time header, and only when at least one of them
    reported a positive value.
    """
    successes = [s for s in samples if s.ok]
    summary = EndpointSummary(
        endpoint=endpoint,
        total=len(samples),
        success_count=len(successes),
        fail_count=len(samples) - len(successes),
    )
    if not successes:
        return summary

    summary.ttfb = compute_stats([s.ttfb_ms for s in successes])

    with_origin = [s for s in successes if s.has_origin_time]
    summary.has_cdn_data = any(s.origin_time_ms > 0 for s in with_origin)
    if summary.has_cdn_data:
        summary.cdn_latency = compute_stats([s.cdn_latency_ms for s in with_origin])
        summary.origin_time_avg = sum(s.origin_time_ms for s in with_origin) / len(with_origin)

    return summary
