"""Rich terminal output for cdnlat."""

from __future__ import annotations

from typing import Optional, Sequence

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from cdnlat.config import METRIC_THRESHOLDS
from cdnlat.models import CampaignResult, Endpoint, EndpointResult, EndpointSummary, RequestSample

console = Console()

_DASH = "-"


def _color_for_ms(value: float, metric: str = "ttfb") -> str:
    """Return a Rich color name based on latency value and metric thresholds."""
    thresholds = METRIC_THRESHOLDS.get(metric, METRIC_THRESHOLDS["ttfb"])
    if value <= thresholds["fast"]:
        return "green"
    elif value <= thresholds["medium"]:
        return "yellow"
    return "red"


def _fmt_ms(value: Optional[float], metric: str = "ttfb", colorize: bool = True) -> Text:
    """Format a millisecond value with optional color; ``None`` renders as a dash."""
    if value is None:
        return Text(_DASH, style="dim")
    text = f"{value:.2f}"
    if colorize:
        return Text(text, style=_color_for_ms(value, metric))
    return Text(text)


# ── Progress tracking ─────────────────────────────────────────────────


class ProgressTracker:
    """Live per-endpoint progress while rounds run."""

    def __init__(self, endpoints: Sequence[Endpoint], total_rounds: int):
        self.endpoints = list(endpoints)
        self.total_rounds = total_rounds
        self.completed = 0
        self.last: dict[str, RequestSample] = {}
        self.failures: dict[str, int] = {ep.label: 0 for ep in self.endpoints}
        self.live: Optional[Live] = None

    def _build_table(self) -> Table:
        table = Table(show_header=True, expand=False, border_style="dim")
        table.add_column("Endpoint", style="bold")
        table.add_column("Progress", min_width=20)
        table.add_column("Last TTFB", justify="right")
        table.add_column("Errors", justify="right")

        bar_width = 15
        filled = int((self.completed / self.total_rounds) * bar_width) if self.total_rounds > 0 else 0
        bar = "[green]" + "█" * filled + "[/green]" + "[dim]░[/dim]" * (bar_width - filled)

        for ep in self.endpoints:
            sample = self.last.get(ep.label)
            if sample is None:
                last = Text(_DASH, style="dim")
            elif sample.error:
                last = Text("error", style="red")
            else:
                last = _fmt_ms(sample.ttfb_ms)
            errors = self.failures[ep.label]
            table.add_row(
                ep.label,
                f"{bar} {self.completed}/{self.total_rounds}",
                last,
                Text(str(errors), style="red" if errors else "dim"),
            )
        return table

    def start(self) -> None:
        self.live = Live(self._build_table(), console=console, refresh_per_second=4)
        self.live.start()

    def update(self, round_number: int, total: int, samples: list[tuple[Endpoint, RequestSample]]) -> None:
        self.completed = round_number
        for endpoint, sample in samples:
            self.last[endpoint.label] = sample
            if sample.error:
                self.failures[endpoint.label] = self.failures.get(endpoint.label, 0) + 1
        if self.live:
            self.live.update(self._build_table())

    def finish(self) -> None:
        if self.live:
            self.live.stop()


# ── Tables ────────────────────────────────────────────────────────────


def build_detail_table(result: EndpointResult) -> Table:
    """Per-sample table for one endpoint."""
    ep = result.endpoint
    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        header_style="bold",
        title=f"[bold]{ep.name}[/bold] [dim]({ep.protocol} @ {ep.ip})[/dim]",
        title_justify="left",
    )
    table.add_column("#", justify="right", width=4)
    table.add_column("Status", justify="right")
    table.add_column("Conn")
    table.add_column("TTFB", justify="right")
    table.add_column("Origin", justify="right")
    table.add_column("CDN", justify="right")
    table.add_column("Proto")
    table.add_column("Error")

    for s in result.samples:
        if s.error:
            table.add_row(
                str(s.index), _DASH, _DASH, _DASH, _DASH, _DASH, _DASH,
                Text(s.error, style="red"),
            )
            continue
        table.add_row(
            str(s.index),
            Text(str(s.status_code), style="dim" if 200 <= s.status_code < 300 else "yellow"),
            "reused" if s.reused else "new",
            _fmt_ms(s.ttfb_ms, "ttfb"),
            _fmt_ms(s.origin_time_ms, "origin"),
            _fmt_ms(s.cdn_latency_ms if s.has_origin_time else None, "cdn"),
            s.actual_protocol or _DASH,
            "",
        )
    return table


def build_summary_table(summaries: Sequence[EndpointSummary], title: str = "Summary") -> Table:
    """Comparison table across endpoints, sorted by median TTFB.

    CDN and origin columns show a dash when the endpoint never reported
    origin processing time.
    """
    def sort_key(s: EndpointSummary) -> float:
        return s.ttfb.p50 if s.success_count else float("inf")

    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        pad_edge=True,
        header_style="bold",
        title=f"[bold]{title}[/bold] [dim](ms, sorted by TTFB P50)[/dim]",
        title_style="",
    )
    table.add_column("Endpoint", style="bold", min_width=12)
    table.add_column("Proto")
    table.add_column("OK", justify="right")
    for col in ("TTFB avg", "P50", "P90", "P99", "Min", "Max", "CDN avg", "CDN P50", "CDN P90", "CDN P99", "Origin avg"):
        table.add_column(col, justify="right")

    for s in sorted(summaries, key=sort_key):
        ok_style = "green" if s.fail_count == 0 else ("red" if s.success_count == 0 else "yellow")
        row: list[Text | str] = [
            s.endpoint.name,
            str(s.endpoint.protocol),
            Text(f"{s.success_count}/{s.total}", style=ok_style),
        ]
        if s.success_count:
            row += [_fmt_ms(v) for v in (s.ttfb.avg, s.ttfb.p50, s.ttfb.p90, s.ttfb.p99, s.ttfb.min, s.ttfb.max)]
        else:
            row += [Text(_DASH, style="dim")] * 6

        cdn = s.cdn_latency if s.has_cdn_data else None
        if cdn is not None:
            row += [_fmt_ms(v, "cdn") for v in (cdn.avg, cdn.p50, cdn.p90, cdn.p99)]
        else:
            row += [Text(_DASH, style="dim")] * 4
        row.append(_fmt_ms(s.origin_time_avg if s.has_cdn_data else None, "origin"))
        table.add_row(*row)

    return table


# ── Charts ────────────────────────────────────────────────────────────


CHART_WIDTH = 40


def _bar(value: float, scale: float, char: str, style: str, width: int = CHART_WIDTH) -> Text:
    cells = int(round(value / scale * width)) if scale > 0 else 0
    if value > 0:
        cells = max(cells, 1)
    return Text(char * min(cells, width), style=style)


def build_decomposition_chart(summaries: Sequence[EndpointSummary], title: str = "TTFB decomposition") -> Table:
    """Average TTFB per endpoint split into its CDN and origin segments.

    Bars share one scale: the slowest average TTFB spans the full chart
    width.  Endpoints without origin data get a plain TTFB bar marked
    "no CDN data".
    """
    measured = [s for s in summaries if s.success_count]
    scale = max((s.ttfb.avg for s in measured), default=0.0)

    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        header_style="bold",
        title=f"[bold]{title}[/bold] [dim](avg ms, █ CDN ▒ origin)[/dim]",
        title_style="",
    )
    table.add_column("Endpoint", style="bold")
    table.add_column("Proto")
    table.add_column("Breakdown", min_width=CHART_WIDTH)
    table.add_column("TTFB avg", justify="right")

    for s in summaries:
        if not s.success_count:
            table.add_row(s.endpoint.name, str(s.endpoint.protocol), Text("no successful samples", style="red"), Text(_DASH, style="dim"))
            continue
        if s.has_cdn_data and s.cdn_latency is not None and s.origin_time_avg is not None:
            cdn, origin = s.cdn_latency.avg, s.origin_time_avg
            bar = Text.assemble(
                _bar(cdn, scale, "█", _color_for_ms(cdn, "cdn")),
                _bar(origin, scale, "▒", _color_for_ms(origin, "origin")),
                (f" CDN {cdn:.2f} + origin {origin:.2f}", "dim"),
            )
        else:
            bar = Text.assemble(
                _bar(s.ttfb.avg, scale, "█", _color_for_ms(s.ttfb.avg)),
                (" no CDN data", "dim"),
            )
        table.add_row(s.endpoint.name, str(s.endpoint.protocol), bar, _fmt_ms(s.ttfb.avg))
    return table


def build_round_chart(result: EndpointResult) -> Table:
    """TTFB of every round for one endpoint, scaled to its slowest success."""
    ep = result.endpoint
    ok = [s for s in result.samples if s.ok]
    scale = max((s.ttfb_ms for s in ok), default=0.0)

    table = Table(
        show_header=True,
        border_style="bright_black",
        expand=False,
        header_style="bold",
        title=f"[bold]{ep.name} TTFB per round[/bold] [dim]({ep.protocol} @ {ep.ip})[/dim]",
        title_justify="left",
    )
    table.add_column("#", justify="right", width=4)
    table.add_column("TTFB", min_width=CHART_WIDTH)
    table.add_column("ms", justify="right")
    table.add_column("CDN", justify="right")
    table.add_column("Origin", justify="right")

    for s in result.samples:
        if s.error:
            table.add_row(str(s.index), Text("error", style="red"), Text(_DASH, style="dim"), Text(_DASH, style="dim"), Text(_DASH, style="dim"))
            continue
        table.add_row(
            str(s.index),
            _bar(s.ttfb_ms, scale, "█", _color_for_ms(s.ttfb_ms)),
            _fmt_ms(s.ttfb_ms),
            _fmt_ms(s.cdn_latency_ms if s.has_origin_time else None, "cdn"),
            _fmt_ms(s.origin_time_ms, "origin"),
        )
    return table


# ── Full result rendering ─────────────────────────────────────────────


def render_legend(target: Optional[Console] = None) -> None:
    out = target or console
    out.print("[dim]All times in milliseconds.[/dim]")
    out.print("[dim]  TTFB: time to first byte of the response[/dim]")
    out.print("[dim]  CDN: TTFB minus x-source-response-time (network + edge processing)[/dim]")
    out.print("[dim]  Origin: x-source-response-time, the origin's own processing time[/dim]")


def render_campaign(result: CampaignResult, verbose: bool = True, target: Optional[Console] = None) -> None:
    """Render detail tables (when *verbose*) and the summary comparison."""
    out = target or console

    for label, error in result.skipped.items():
        out.print(f"[bold]{label}[/bold]  [red]skipped: {error}[/red]")

    if verbose:
        for endpoint_result in result.results:
            out.print()
            out.print(build_detail_table(endpoint_result))

    summaries = result.summaries
    if summaries:
        out.print()
        out.print(build_summary_table(summaries))
        render_legend(out)
    else:
        out.print("[dim]No endpoints were measured.[/dim]")


def render_error(message: str) -> None:
    """Display an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def render_warning(message: str) -> None:
    """Display a warning message."""
    console.print(f"[yellow]Warning:[/yellow] {message}")
