"""Logging setup: rich console output plus an optional timestamped log file."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

from cdnlat.config import LOG_SUBDIR, TIMESTAMP_FORMAT
from cdnlat.display import console
from cdnlat.models import CampaignSettings

_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(message)s"
_FILE_DATEFMT = "%H:%M:%S"

logger = logging.getLogger("cdnlat")


def setup_logging(
    output_dir: Optional[str] = None,
    enable_file: bool = False,
    verbose: bool = False,
    quiet: bool = False,
    started_at: Optional[datetime] = None,
) -> Optional[Path]:
    """Configure the ``cdnlat`` logger.

    Console lines go through :class:`rich.logging.RichHandler`; with
    *enable_file* a copy is written to ``<output_dir>/logs/<timestamp>.log``.
    Returns the log file path, or ``None`` when no file is written.
    """
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    console_handler = RichHandler(
        console=console,
        show_path=False,
        markup=False,
        log_time_format="[%X]",
    )
    console_handler.setLevel(logging.WARNING if quiet else logger.level)
    logger.addHandler(console_handler)

    if not enable_file or not output_dir:
        return None

    log_dir = Path(output_dir) / LOG_SUBDIR
    log_dir.mkdir(parents=True, exist_ok=True)
    stamp = (started_at or datetime.now()).strftime(TIMESTAMP_FORMAT)
    log_path = log_dir / f"{stamp}.log"

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
    file_handler.setLevel(logger.level)
    logger.addHandler(file_handler)
    return log_path


def close_logging() -> None:
    """Flush and detach all handlers (closes the log file)."""
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def log_settings(settings: CampaignSettings, log: logging.Logger = logger) -> None:
    """Record the campaign configuration at the top of the log."""
    log.info("==================== Configuration ====================")
    log.info("Domain: %s", settings.host)
    log.info("Path: %s", settings.path)
    log.info("Rounds per endpoint: %d", settings.rounds)
    log.info("Request timeout: %.3gs", settings.timeout)
    log.info("Round interval: %.3gs", settings.interval)
    log.info("Endpoints:")
    for ep in settings.endpoints:
        log.info("  - %s: %s (%s)", ep.name, ep.ip, ep.protocol)
