"""JSON, CSV and HTML export for campaign results."""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.console import Console

from cdnlat.config import REPORT_SUBDIR, TIMESTAMP_FORMAT
from cdnlat.display import (
    build_decomposition_chart,
    build_detail_table,
    build_round_chart,
    build_summary_table,
    render_legend,
)
from cdnlat.models import CampaignResult, EndpointSummary, LatencyStats, Protocol, RequestSample


def export_json(result: CampaignResult, indent: int = 2) -> str:
    """Export full results as JSON string."""
    data = _build_export_dict(result)
    return json.dumps(data, indent=indent, ensure_ascii=False, default=str)


def export_csv(result: CampaignResult) -> str:
    """Export results as CSV string (one row per endpoint summary)."""
    output = io.StringIO()
    writer = csv.writer(output)

    stat_fields = ["avg", "min", "max", "p50", "p90", "p95", "p99"]
    writer.writerow(
        [
            "start_time",
            "endpoint",
            "ip",
            "protocol",
            "total",
            "success",
            "fail",
            "has_cdn_data",
        ]
        + [f"ttfb_{f}" for f in stat_fields]
        + [f"cdn_{f}" for f in stat_fields]
        + ["origin_avg"]
    )

    for s in result.summaries:
        row = [
            result.started_at.isoformat(),
            s.endpoint.name,
            s.endpoint.ip,
            str(s.endpoint.protocol),
            s.total,
            s.success_count,
            s.fail_count,
            s.has_cdn_data,
        ]
        row.extend(_round(getattr(s.ttfb, f)) for f in stat_fields)
        if s.has_cdn_data and s.cdn_latency is not None:
            row.extend(_round(getattr(s.cdn_latency, f)) for f in stat_fields)
            row.append(_round(s.origin_time_avg))
        else:
            row.extend([""] * (len(stat_fields) + 1))
        writer.writerow(row)

    return output.getvalue()


def export_html(result: CampaignResult) -> str:
    """Render the report as a standalone HTML page.

    Tables are drawn on a recording rich console and exported with
    inline styles: a summary table and a TTFB decomposition chart per
    protocol, then every endpoint's per-round TTFB chart and per-sample table.
    """
    page = Console(record=True, width=160, file=io.StringIO(), force_terminal=True)
    settings = result.settings

    page.rule("[bold]CDN latency report[/bold]")
    page.print(f"Target: [bold]{settings.url}[/bold]")
    page.print(f"Started: {result.started_at.isoformat()}   Duration: {result.duration:.1f}s")
    page.print(f"Rounds: {settings.rounds}   Timeout: {settings.timeout:g}s   Interval: {settings.interval:g}s")

    for label, error in result.skipped.items():
        page.print(f"[bold]{label}[/bold]  [red]skipped: {error}[/red]")

    by_protocol = _group_by_protocol(result.summaries)
    for protocol, summaries in by_protocol.items():
        page.print()
        page.print(build_summary_table(summaries, title=str(protocol)))
        page.print()
        page.print(build_decomposition_chart(summaries, title=f"{protocol} TTFB decomposition"))

    page.print()
    render_legend(page)

    page.print()
    page.rule("[bold]Samples[/bold]")
    for endpoint_result in result.results:
        page.print()
        page.print(build_round_chart(endpoint_result))
        page.print()
        page.print(build_detail_table(endpoint_result))

    return page.export_html(inline_styles=True)


def _group_by_protocol(summaries: list[EndpointSummary]) -> dict[Protocol, list[EndpointSummary]]:
    grouped: dict[Protocol, list[EndpointSummary]] = {}
    for s in summaries:
        grouped.setdefault(s.endpoint.protocol, []).append(s)
    return grouped


def report_path(output_dir: str, started_at: datetime, ext: str) -> Path:
    """Return ``<output_dir>/reports/report_<timestamp>.<ext>``."""
    stamp = started_at.astimezone().strftime(TIMESTAMP_FORMAT)
    return Path(output_dir) / REPORT_SUBDIR / f"report_{stamp}.{ext}"


def write_to_file(content: str, filepath: Path | str) -> Path:
    """Write export content to a file, creating parent directories."""
    path = Path(filepath)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)
    return path


def _round(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 3)


def _stats_to_dict(stats: Optional[LatencyStats]) -> Optional[dict]:
    if stats is None:
        return None
    return {
        "avg": _round(stats.avg),
        "min": _round(stats.min),
        "max": _round(stats.max),
        "p50": _round(stats.p50),
        "p90": _round(stats.p90),
        "p95": _round(stats.p95),
        "p99": _round(stats.p99),
        "stdev": _round(stats.stdev),
        "jitter": _round(stats.jitter),
    }


def _sample_to_dict(s: RequestSample) -> dict:
    return {
        "index": s.index,
        "ttfb_ms": _round(s.ttfb_ms),
        "origin_time_ms": _round(s.origin_time_ms),
        "cdn_latency_ms": _round(s.cdn_latency_ms) if s.has_origin_time else None,
        "status_code": s.status_code,
        "reused": s.reused,
        "actual_protocol": s.actual_protocol,
        "error": s.error,
    }


def _summary_to_dict(s: EndpointSummary) -> dict:
    """Convert a summary; CDN fields are ``null`` when there is no origin data."""
    return {
        "endpoint": s.endpoint.name,
        "ip": s.endpoint.ip,
        "protocol": str(s.endpoint.protocol),
        "total": s.total,
        "success": s.success_count,
        "fail": s.fail_count,
        "has_cdn_data": s.has_cdn_data,
        "ttfb": _stats_to_dict(s.ttfb),
        "cdn_latency": _stats_to_dict(s.cdn_latency) if s.has_cdn_data else None,
        "origin_time_avg": _round(s.origin_time_avg) if s.has_cdn_data else None,
    }


def _build_export_dict(result: CampaignResult) -> dict:
    """Build a serializable dictionary from CampaignResult."""
    settings = result.settings
    return {
        "start_time": result.started_at.isoformat(),
        "end_time": result.finished_at.isoformat() if result.finished_at else None,
        "duration_s": round(result.duration, 3),
        "config": {
            "domain": settings.host,
            "path": settings.path,
            "test_count": settings.rounds,
            "timeout_s": settings.timeout,
            "interval_s": settings.interval,
            "endpoints": [
                {"name": ep.name, "ip": ep.ip, "protocol": str(ep.protocol)}
                for ep in settings.endpoints
            ],
        },
        "skipped": dict(result.skipped),
        "results": {
            r.endpoint.label: [_sample_to_dict(s) for s in r.samples]
            for r in result.results
        },
        "summaries": [_summary_to_dict(s) for s in result.summaries],
    }
