"""YAML campaign configuration loader."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from cdnlat.config import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_INTERVAL,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_PATH,
    DEFAULT_TIMEOUT,
)
from cdnlat.models import CampaignSettings, Endpoint, OutputSettings, Protocol

logger = logging.getLogger(__name__)

# Go-style duration units, e.g. "1m30s", "250ms", "1.5s".
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


class ConfigError(Exception):
    """Raised when the configuration file is missing or invalid."""


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """Parse a duration into seconds.

    Accepts bare numbers (seconds) and Go-style strings such as ``"30s"``,
    ``"100ms"`` or ``"1m30s"``.  Returns ``None`` if *value* is not a
    valid duration.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if value >= 0 else None

    text = str(value).strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        return seconds if seconds >= 0 else None

    pos = 0
    total = 0.0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != pos:
            return None
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        return None
    return total


def _require_mapping(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{what}' must be a mapping")
    return value


def _parse_endpoints(raw: Any) -> list[Endpoint]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError("'endpoints' must be a non-empty list")

    endpoints: list[Endpoint] = []
    seen: set[str] = set()
    for i, item in enumerate(raw, 1):
        item = _require_mapping(item, f"endpoints[{i}]")
        name = str(item.get("name") or "").strip()
        ip = str(item.get("ip") or "").strip()
        if not name or not ip:
            raise ConfigError(f"endpoints[{i}] needs both 'name' and 'ip'")
        try:
            protocol = Protocol.parse(item.get("protocol") or Protocol.HTTP1.value)
        except ValueError as exc:
            raise ConfigError(f"endpoints[{i}] ({name}): {exc}") from exc
        endpoint = Endpoint(name=name, ip=ip, protocol=protocol)
        # Reports and progress are keyed by label.
        if endpoint.label in seen:
            raise ConfigError(f"endpoints[{i}]: duplicate endpoint {endpoint.label}; give it a distinct name")
        seen.add(endpoint.label)
        endpoints.append(endpoint)
    return endpoints


def settings_from_dict(data: dict[str, Any]) -> CampaignSettings:
    """Validate a parsed configuration mapping and build :class:`CampaignSettings`."""
    host = str(data.get("domain") or "").strip()
    if not host:
        raise ConfigError("'domain' is required")

    path = str(data.get("path") or DEFAULT_PATH).strip()
    if not path.startswith("/"):
        path = "/" + path

    rounds = data.get("test_count")
    if isinstance(rounds, bool) or not isinstance(rounds, int) or rounds <= 0:
        raise ConfigError("'test_count' must be a positive integer")

    timeout = parse_duration(data.get("timeout"))
    if not timeout:
        timeout = DEFAULT_TIMEOUT
    interval = parse_duration(data.get("interval"))
    if interval is None:
        interval = DEFAULT_INTERVAL

    output = _require_mapping(data.get("output"), "output")

    return CampaignSettings(
        host=host,
        path=path,
        rounds=rounds,
        timeout=timeout,
        interval=interval,
        endpoints=_parse_endpoints(data.get("endpoints")),
        output=OutputSettings(
            dir=str(output.get("dir") or DEFAULT_OUTPUT_DIR),
            enable_log=bool(output.get("enable_log", False)),
            enable_json=bool(output.get("enable_json", False)),
            enable_html=bool(output.get("enable_html", False)),
            enable_csv=bool(output.get("enable_csv", False)),
        ),
    )


def load_settings(path: Union[str, Path, None] = None) -> CampaignSettings:
    """Load campaign settings from a YAML file.

    Raises
    ------
    ConfigError
        If the file is missing, is not valid YAML, or fails validation.
    """
    config_file = Path(path or DEFAULT_CONFIG_PATH)
    if not config_file.exists():
        raise ConfigError(f"Configuration file not found: {config_file}")

    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    except yaml.YAMLError as err:
        raise ConfigError(f"Invalid YAML in {config_file}: {err}") from err

    if not data:
        raise ConfigError(f"Configuration file is empty: {config_file}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {config_file}")

    settings = settings_from_dict(data)
    logger.debug("Loaded %d endpoints from %s", len(settings.endpoints), config_file)
    return settings
