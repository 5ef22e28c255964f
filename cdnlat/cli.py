"""CLI entry point and orchestration for cdnlat."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import sys
from datetime import datetime
from typing import Optional

import click

from cdnlat import __version__
from cdnlat.config import DEFAULT_CONFIG_PATH
from cdnlat.models import CampaignResult, CampaignSettings

logger = logging.getLogger("cdnlat")


@click.command()
@click.argument("config_path", default=DEFAULT_CONFIG_PATH, required=False, type=click.Path(dir_okay=False))
@click.option("-n", "--rounds", type=int, default=None, help="Override test_count (rounds per endpoint)")
@click.option("-t", "--timeout", type=float, default=None, help="Override request timeout in seconds")
@click.option("-i", "--interval", type=float, default=None, help="Override pause between rounds in seconds")
@click.option("-o", "--output-dir", default=None, help="Override output directory")
@click.option("--json/--no-json", "json_output", default=None, help="Write a JSON report")
@click.option("--html/--no-html", "html_output", default=None, help="Write an HTML report")
@click.option("--csv", "csv_output", is_flag=True, help="Write a CSV summary")
@click.option("--no-log-file", is_flag=True, help="Do not write a log file")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress, show only results")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.version_option(version=__version__)
def main(
    config_path: str,
    rounds: Optional[int],
    timeout: Optional[float],
    interval: Optional[float],
    output_dir: Optional[str],
    json_output: Optional[bool],
    html_output: Optional[bool],
    csv_output: bool,
    no_log_file: bool,
    quiet: bool,
    verbose: bool,
) -> None:
    """cdnlat: compare TTFB across CDN edges pinned by IP.

    Every round probes all endpoints listed in CONFIG_PATH concurrently and
    splits TTFB into CDN latency and origin time using the
    x-source-response-time header.
    """
    from cdnlat.display import render_error
    from cdnlat.settings import ConfigError, load_settings

    try:
        settings = load_settings(config_path)
    except ConfigError as exc:
        render_error(str(exc))
        click.echo(f"Usage: cdnlat [CONFIG_PATH]  (default: {DEFAULT_CONFIG_PATH})", err=True)
        sys.exit(1)

    settings = _apply_overrides(
        settings,
        rounds=rounds,
        timeout=timeout,
        interval=interval,
        output_dir=output_dir,
        json_output=json_output,
        html_output=html_output,
        csv_output=csv_output,
        no_log_file=no_log_file,
    )
    if settings.rounds <= 0:
        render_error("--rounds must be positive")
        sys.exit(1)

    from cdnlat.logs import close_logging, log_settings, setup_logging

    log_path = setup_logging(
        settings.output.dir,
        enable_file=settings.output.enable_log,
        verbose=verbose,
        quiet=quiet,
        started_at=datetime.now(),
    )
    try:
        log_settings(settings)
        try:
            result = asyncio.run(_run(settings, quiet))
        except KeyboardInterrupt:
            from cdnlat.display import console
            console.print("\n[yellow]Interrupted.[/yellow]")
            sys.exit(130)

        _handle_output(result, quiet)
        if log_path is not None:
            logger.info("Log file: %s", log_path)
    finally:
        close_logging()


def _apply_overrides(
    settings: CampaignSettings,
    *,
    rounds: Optional[int],
    timeout: Optional[float],
    interval: Optional[float],
    output_dir: Optional[str],
    json_output: Optional[bool],
    html_output: Optional[bool],
    csv_output: bool,
    no_log_file: bool,
) -> CampaignSettings:
    """Return a copy of *settings* with command line overrides applied."""
    output = settings.output
    output = dataclasses.replace(
        output,
        dir=output_dir if output_dir is not None else output.dir,
        enable_json=output.enable_json if json_output is None else json_output,
        enable_html=output.enable_html if html_output is None else html_output,
        enable_csv=output.enable_csv or csv_output,
        enable_log=output.enable_log and not no_log_file,
    )
    return dataclasses.replace(
        settings,
        rounds=settings.rounds if rounds is None else rounds,
        timeout=settings.timeout if timeout is None else timeout,
        interval=settings.interval if interval is None else interval,
        output=output,
    )


async def _run(settings: CampaignSettings, quiet: bool) -> CampaignResult:
    """Main async orchestration."""
    from cdnlat.display import ProgressTracker, render_warning
    from cdnlat.scheduler import RoundScheduler

    scheduler = RoundScheduler(settings)
    handles = scheduler.prepare()
    if not handles:
        render_warning("No endpoint could be prepared; nothing to measure")

    progress = None
    if not quiet and handles:
        progress = ProgressTracker([h.endpoint for h in handles], settings.rounds)
        progress.start()

    try:
        scheduler.progress = progress.update if progress else None
        return await scheduler.run()
    finally:
        if progress:
            progress.finish()


def _handle_output(result: CampaignResult, quiet: bool) -> None:
    """Render tables and write the enabled reports."""
    from cdnlat.display import console, render_campaign
    from cdnlat.export import export_csv, export_html, export_json, report_path, write_to_file

    render_campaign(result, verbose=not quiet)

    output = result.settings.output
    exporters = [
        (output.enable_json, "json", export_json, "JSON report"),
        (output.enable_csv, "csv", export_csv, "CSV summary"),
        (output.enable_html, "html", export_html, "HTML report"),
    ]
    for enabled, ext, exporter, label in exporters:
        if not enabled:
            continue
        try:
            path = write_to_file(exporter(result), report_path(output.dir, result.started_at, ext))
        except OSError as exc:
            logger.error("Writing %s failed: %s", label, exc)
            continue
        console.print(f"[dim]{label}: {path}[/dim]")


if __name__ == "__main__":
    main()
